"""
Notes + media: storage, classification, ingestion and the merged feed.

Nothing in here knows about Flask.  The web layer builds a `NoteLog` and an
`AssetStore` per request and passes them to `ingest()` / `build_feed()`:

• the note log is an append-only text file, one note per line, oldest first
• the asset store is a flat directory, the filename is the key
• the feed is recomputed from both on every read, nothing is cached
"""

import io
import logging
import os
import re
import shutil
import tempfile
import threading
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Iterable
from urllib.parse import quote

log = logging.getLogger(__name__)

################################################################################
# Errors
################################################################################
STAGE_NOTE_LOG = "note-log"
STAGE_ASSET_WRITE = "asset-write"
STAGE_ASSET_STORE = "asset-store"


class HubError(Exception):
    """Base class for everything raised by the hub core."""


class ValidationError(HubError):
    """A single submitted item is unusable; the rest of the submission goes on."""

    def __init__(self, message: str, *, reason: str = "invalid"):
        super().__init__(message)
        self.reason = reason


class Rejected(ValidationError):
    def __init__(self, filename: str):
        super().__init__(f"unsupported file type: {filename!r}", reason="extension")
        self.filename = filename


class StorageError(HubError):
    """Reading or writing one of the stores failed.  Fatal to the request."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


################################################################################
# Classifier
################################################################################
IMAGE_MIMES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "svg": "image/svg+xml",
}
VIDEO_MIMES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "ogg": "video/ogg",
    "mov": "video/quicktime",
}
ALLOWED_EXTENSIONS = frozenset(IMAGE_MIMES) | frozenset(VIDEO_MIMES)
KINDS = ("text", "image", "video")


def extension(filename: str) -> str:
    """`'Cat.JPG'` → `'jpg'`; no suffix → `''`."""
    return Path(filename).suffix[1:].lower()


def classify(filename: str) -> tuple[str, str]:
    """
    Map a filename to `(kind, mime_type)` by its extension alone.

    Raises `Rejected` for anything outside the allow-list.  The bytes are
    never looked at, so the declared extension is trusted.
    """
    ext = extension(filename)
    if ext in IMAGE_MIMES:
        return "image", IMAGE_MIMES[ext]
    if ext in VIDEO_MIMES:
        return "video", VIDEO_MIMES[ext]
    raise Rejected(filename)


def is_allowed(filename: str) -> bool:
    return extension(filename) in ALLOWED_EXTENSIONS


################################################################################
# Feed items
################################################################################
@dataclass(frozen=True)
class FeedItem:
    kind: str  # "text" | "image" | "video"
    content: str  # note body, or the asset filename
    mime_type: str = ""
    link_target: str | None = None


@dataclass
class Feed:
    texts: list[FeedItem] = field(default_factory=list)  # newest append first
    media: list[FeedItem] = field(default_factory=list)  # newest mtime first

    @property
    def items(self) -> list[FeedItem]:
        return self.texts + self.media


################################################################################
# Note log
################################################################################
_append_locks: dict[str, threading.Lock] = {}
_append_locks_guard = threading.Lock()


def _append_lock(path: Path) -> threading.Lock:
    """One lock per log file, shared by every `NoteLog` pointing at it."""
    key = str(path.resolve())
    with _append_locks_guard:
        return _append_locks.setdefault(key, threading.Lock())


_BREAK_RE = re.compile(r"\r\n|\r|\n")


def one_line(text: str) -> str:
    """Collapse line breaks so a note always fits on a single log line."""
    parts = (p.strip() for p in _BREAK_RE.split(text))
    return " ".join(p for p in parts if p)


class NoteLog:
    """Append-only text file, one note per line, oldest first."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"NoteLog({str(self.path)!r})"

    def append(self, text: str) -> str:
        """
        Append *text* as one line and return the line as stored.

        The whole line goes out in a single `write()` on an O_APPEND handle
        while holding the per-file lock, so readers never see half a note.
        """
        line = one_line(text)
        if not line:
            raise ValidationError("empty note", reason="empty")
        data = (line + "\n").encode("utf-8")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with _append_lock(self.path):
                with self.path.open("ab") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
        except OSError as exc:
            raise StorageError(STAGE_NOTE_LOG, str(exc)) from exc
        return line

    def read(self) -> list[str]:
        """
        All non-empty lines in file order.  A missing log reads as empty.

        Reads hold the same per-file lock as `append`, so an in-process read
        never sees half a note.
        """
        try:
            with _append_lock(self.path), self.path.open(
                encoding="utf-8", errors="replace"
            ) as fh:
                raw = fh.read()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StorageError(STAGE_NOTE_LOG, str(exc)) from exc
        # newline-delimited only: other Unicode separators are note content
        lines = (line.removesuffix("\r") for line in raw.split("\n"))
        return [line for line in lines if line]

    def ensure(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
        except OSError as exc:
            raise StorageError(STAGE_NOTE_LOG, str(exc)) from exc


################################################################################
# Asset store
################################################################################
@dataclass(frozen=True)
class Asset:
    name: str
    kind: str
    mime_type: str
    mtime_ns: int


class AssetStore:
    """Flat directory of uploaded media, keyed by filename."""

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"AssetStore({str(self.root)!r})"

    def ensure(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(STAGE_ASSET_STORE, str(exc)) from exc

    def write(self, name: str, stream: BinaryIO) -> int:
        """
        Copy *stream* into the store as *name* (already checked by `safe_name`) and
        return the number of bytes written.

        Bytes land in a hidden temp file next to the target and are renamed
        into place, so a reader sees either the old file or the new one.
        Same-name uploads race: the last rename wins.
        """
        self.ensure()
        try:
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".upload-", suffix=".part")
        except OSError as exc:
            raise StorageError(STAGE_ASSET_STORE, str(exc)) from exc

        try:
            with os.fdopen(fd, "wb") as fh:
                shutil.copyfileobj(stream, fh)
                size = fh.tell()
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp, 0o644)
            os.replace(tmp, self.root / name)
        except BaseException as exc:
            with suppress(OSError):
                os.unlink(tmp)
            if isinstance(exc, OSError):
                raise StorageError(STAGE_ASSET_WRITE, f"{name}: {exc}") from exc
            raise
        return size

    def scan(self) -> list[Asset]:
        """
        Every classifiable regular file, in directory order.

        A missing or unreadable directory is an empty store.  Files that
        vanish mid-scan or don't classify are left out.
        """
        try:
            with os.scandir(self.root) as it:
                entries = list(it)
        except OSError:
            return []

        found: list[Asset] = []
        for entry in entries:
            if entry.name.startswith("."):
                continue  # temp files + dotfiles
            try:
                if not entry.is_file():
                    continue
                st = entry.stat()
            except OSError:
                continue
            try:
                kind, mime = classify(entry.name)
            except Rejected:
                log.warning("Ignoring unrecognised file in asset store: %s", entry.name)
                continue
            found.append(Asset(entry.name, kind, mime, st.st_mtime_ns))
        return found


################################################################################
# Ingestion
################################################################################
Upload = tuple[str, BinaryIO]

_SEP_RE = re.compile(r"[\\/]")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class SkippedFile:
    filename: str
    reason: str  # "empty" | "unsafe-name" | "extension"


@dataclass
class IngestReport:
    note_saved: bool = False
    stored: list[str] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)


def safe_name(filename: str) -> str:
    """
    Reduce an uploaded filename to its last path component, kept verbatim.

    The stored name is the cross-link key, so nothing is rewritten: names
    that are empty, hidden (leading dot, which also covers `.` and `..`) or
    carry control characters are refused with `ValidationError`.
    """
    name = _SEP_RE.split(filename or "")[-1]
    if not name or name.startswith(".") or _CONTROL_RE.search(name):
        raise ValidationError(f"unsafe filename: {filename!r}", reason="unsafe-name")
    return name


def _is_empty(stream: BinaryIO) -> bool:
    pos = stream.tell()
    stream.seek(0, io.SEEK_END)
    end = stream.tell()
    stream.seek(pos)
    return end == pos


def _accept(filename: str, stream: BinaryIO) -> str:
    """Validate one upload; return the name it will be stored under."""
    if _is_empty(stream):
        raise ValidationError(f"empty upload: {filename!r}", reason="empty")
    name = safe_name(filename)
    classify(name)
    return name


def ingest(
    note_text: str | None,
    files: Iterable[Upload] = (),
    *,
    notes: NoteLog,
    assets: AssetStore,
) -> IngestReport:
    """
    Store one submission: an optional note plus any number of files.

    • note first, then files in the order given
    • unusable files are skipped and listed in the report, never raised
    • `StorageError` aborts the rest; whatever was written before stays
    """
    report = IngestReport()

    if note_text and note_text.strip():
        line = notes.append(note_text)
        report.note_saved = True
        log.info("Saved note (%d chars) to %s", len(line), notes.path)

    for filename, stream in files:
        if not stream.seekable():
            stream = io.BytesIO(stream.read())
        try:
            name = _accept(filename, stream)
        except ValidationError as exc:
            report.skipped.append(SkippedFile(filename or "", exc.reason))
            log.info("Skipped upload %r (%s)", filename, exc.reason)
            continue
        size = assets.write(name, stream)
        report.stored.append(name)
        log.info("Stored asset %s (%d bytes)", name, size)

    return report


################################################################################
# Feed
################################################################################
def asset_url(name: str) -> str:
    return "/hub/assets/" + quote(name)


def build_feed(
    *,
    notes: NoteLog,
    assets: AssetStore,
    asset_path: Callable[[str], str] = asset_url,
) -> Feed:
    """
    Merge both stores into one view: notes newest-append-first, then media
    newest-mtime-first.  The two groups are never interleaved, notes carry
    no timestamp to compare against.

    A note whose text equals an asset filename (exact, case-sensitive) gets
    `link_target` pointing at that asset.
    """
    found = sorted(assets.scan(), key=lambda a: a.mtime_ns, reverse=True)
    names = {a.name for a in found}

    texts = [
        FeedItem("text", line, link_target=asset_path(line) if line in names else None)
        for line in reversed(notes.read())
    ]
    media = [FeedItem(a.kind, a.name, a.mime_type) for a in found]
    return Feed(texts=texts, media=media)
