import pytest

from myhub.feed import (
    ALLOWED_EXTENSIONS,
    Rejected,
    ValidationError,
    classify,
    extension,
    is_allowed,
)


@pytest.mark.parametrize("name, kind, mime", [
    ("a.jpg",  "image", "image/jpeg"),
    ("a.jpeg", "image", "image/jpeg"),
    ("a.png",  "image", "image/png"),
    ("a.svg",  "image", "image/svg+xml"),
    ("a.mp4",  "video", "video/mp4"),
    ("a.webm", "video", "video/webm"),
    ("a.ogg",  "video", "video/ogg"),
    ("a.mov",  "video", "video/quicktime"),
])
def test_classify_known_extensions(name, kind, mime):
    assert classify(name) == (kind, mime)


def test_every_allowed_extension_has_a_mime():
    for ext in ALLOWED_EXTENSIONS:
        kind, mime = classify(f"file.{ext}")
        assert kind in {"image", "video"}
        assert mime


@pytest.mark.parametrize("name", ["Holiday.JPG", "clip.MoV", "x.Png"])
def test_extension_is_case_insensitive(name):
    assert is_allowed(name)
    classify(name)  # no raise


@pytest.mark.parametrize("name", [
    "malicious.exe",
    "notes.txt",
    "archive.tar.gz",
    "noext",
    "",
    ".png",          # dotfile, no suffix
    "image.png.exe",
])
def test_classify_rejects_everything_else(name):
    assert not is_allowed(name)
    with pytest.raises(Rejected) as err:
        classify(name)
    assert isinstance(err.value, ValidationError)
    assert err.value.reason == "extension"


def test_extension_uses_last_suffix():
    assert extension("movie.final.MP4") == "mp4"
    assert extension("README") == ""
