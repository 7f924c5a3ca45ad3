#!/usr/bin/env python3
"""
WebPCrunch
Converts every image in a folder tree (or a single file) to WebP.
Parallel processing, optional keep-original-if-smaller policy,
preserves EXIF metadata. Progress bar and summary table on the CLI.
"""

import argparse
import contextlib
import io
import os
import signal
import stat
import struct
import sys
import tempfile
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator

from PIL import Image
import piexif
from tqdm import tqdm

# Try to import HEIC/AVIF support
try:
    import pillow_heif
    pillow_heif.register_heif_opener()  # Handles both HEIC and AVIF
    HEIF_AVAILABLE = True
except ImportError:
    HEIF_AVAILABLE = False

# ── ANSI Colors ──────────────────────────────────────────────────────────────

class Color:
    """ANSI color codes. Auto-disabled when not writing to a TTY."""
    _enabled = sys.stdout.isatty()

    BOLD    = '\033[1m'   if _enabled else ''
    DIM     = '\033[2m'   if _enabled else ''
    GREEN   = '\033[92m'  if _enabled else ''
    RED     = '\033[91m'  if _enabled else ''
    YELLOW  = '\033[93m'  if _enabled else ''
    CYAN    = '\033[96m'  if _enabled else ''
    RESET   = '\033[0m'   if _enabled else ''

C = Color

# ── Configuration ────────────────────────────────────────────────────────────

DEFAULT_QUALITY = 100           # 0-100; with lossless it trades speed for size
DEFAULT_LOSSLESS = True
DEFAULT_METHOD = 6              # libwebp effort, 0 (fast) .. 6 (best)
DEFAULT_MAX_DEPTH = 8           # Directory levels below the root
METHOD_RANGE = range(0, 7)
MAX_WORKERS = min(os.cpu_count() or 4, 8)
OUTPUT_EXTENSION = '.webp'
SUPPORTED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.tiff', '.tif', '.webp', '.gif', '.heic', '.heif', '.avif'}
EXIF_SOURCE_EXTENSIONS = ('.jpg', '.jpeg', '.tiff', '.tif')
WEBP_MODES = ('RGB', 'RGBA')

# Read once at import; os.umask can only be queried by setting it
UMASK = os.umask(0)
os.umask(UMASK)


# ── Errors ───────────────────────────────────────────────────────────────────

class WebPCrunchError(Exception):
    """Base class for everything raised by webpcrunch."""
    kind = 'error'


class ConfigError(WebPCrunchError, ValueError):
    """Invalid encoding configuration."""
    kind = 'config'


class RootAccessError(WebPCrunchError, OSError):
    """The root path cannot be accessed. Aborts the run."""
    kind = 'root'


class EnumerationError(WebPCrunchError):
    kind = 'enumeration'


class DecodeError(WebPCrunchError):
    kind = 'decode'


class EncodeError(WebPCrunchError):
    kind = 'encode'


class WriteError(WebPCrunchError):
    kind = 'write'


# ── Data Model ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EncodingConfig:
    """Settings shared read-only by every job of a run."""
    quality: int = DEFAULT_QUALITY
    lossless: bool = DEFAULT_LOSSLESS
    method: int = DEFAULT_METHOD
    keep_original_if_smaller: bool = False
    max_depth: int | None = DEFAULT_MAX_DEPTH
    output_dir: Path | None = None
    replace: bool = False
    keep_metadata: bool = True

    def __post_init__(self):
        if not 0 <= self.quality <= 100:
            raise ConfigError(f"quality must be between 0 and 100, got {self.quality}")
        if self.method not in METHOD_RANGE:
            raise ConfigError(
                f"method must be between {METHOD_RANGE.start} and {METHOD_RANGE.stop - 1}, got {self.method}"
            )
        if self.max_depth is not None and self.max_depth < 0:
            raise ConfigError(f"max_depth must be non-negative or None, got {self.max_depth}")


@dataclass(frozen=True)
class ImageTask:
    path: Path
    size: int
    root: Path


@dataclass(frozen=True)
class DecodedImage:
    """Pixels ready for the encoder, plus EXIF bytes worth carrying over."""
    pixels: Image.Image
    exif: bytes | None = None


class Decision(Enum):
    REPLACE = 'replace'
    KEEP_ORIGINAL = 'keep-original'


class Action(Enum):
    REPLACED = 'replaced'
    KEPT_ORIGINAL = 'kept-original'
    SKIPPED = 'skipped'


@dataclass(frozen=True)
class Failure:
    path: Path
    kind: str
    detail: str

    @classmethod
    def from_error(cls, path: Path, error: WebPCrunchError) -> 'Failure':
        return cls(path=path, kind=error.kind, detail=str(error))


@dataclass(frozen=True)
class ConversionOutcome:
    """Result of one job. Failed jobs always carry Action.SKIPPED."""
    path: Path
    ok: bool
    original_size: int
    action: Action
    output_size: int | None = None
    encoded_size: int | None = None
    output_path: Path | None = None
    error: Failure | None = None
    elapsed: float = 0.0


@dataclass(frozen=True)
class RunSummary:
    total_files: int
    total_converted: int
    total_kept_original: int
    total_failed: int
    input_bytes: int
    output_bytes: int
    elapsed: float
    failures: tuple[Failure, ...] = ()
    cancelled: bool = False

    @property
    def saved_bytes(self) -> int:
        return self.input_bytes - self.output_bytes

    @property
    def reduction_percent(self) -> float:
        if self.input_bytes <= 0:
            return 0.0
        return 100.0 * self.saved_bytes / self.input_bytes


# ── Helpers ──────────────────────────────────────────────────────────────────

def format_bytes(size_bytes: int) -> str:
    """Human-readable file size."""
    for unit in ('B', 'KB', 'MB', 'GB'):
        if abs(size_bytes) < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def format_duration(seconds: float) -> str:
    """Milliseconds below a second, then seconds, then minutes."""
    if seconds < 1:
        return f"{int(seconds * 1000)} ms"
    minutes, seconds = divmod(seconds, 60)
    if minutes > 0:
        return f"{int(minutes)}m {seconds:.1f}s"
    return f"{seconds:.1f}s"


def resolve_workers(requested: int | None = None) -> int:
    """Worker count bounded by the machine's cores."""
    if requested is None:
        return MAX_WORKERS
    if requested < 1:
        raise ConfigError(f"workers must be at least 1, got {requested}")
    return min(requested, os.cpu_count() or 1)


def get_output_path(task: ImageTask, output_dir: Path | None = None) -> Path:
    """Sibling .webp path, or the same relative path mirrored under output_dir."""
    if output_dir is None:
        return task.path.with_suffix(OUTPUT_EXTENSION)
    try:
        relative_path = task.path.relative_to(task.root)
    except ValueError:
        relative_path = Path(task.path.name)
    return Path(output_dir) / relative_path.with_suffix(OUTPUT_EXTENSION)


# ── Path Enumeration ─────────────────────────────────────────────────────────

def _scan(directory: Path) -> list[os.DirEntry]:
    with os.scandir(directory) as it:
        return sorted(it, key=lambda entry: entry.name)


def _walk(root: Path, entries: list[os.DirEntry], depth: int, max_depth: int | None,
          report: Callable[[Failure], None], excluded: set[Path]) -> Iterator[ImageTask]:
    # Files of a directory come before any of its subdirectories
    subdirs = []
    for entry in entries:
        path = Path(entry.path)
        try:
            if entry.is_dir(follow_symlinks=False):
                # Symlinked directories are not followed, so depth alone bounds the walk
                if max_depth is not None and depth + 1 > max_depth:
                    continue
                if path.resolve() not in excluded:
                    subdirs.append(path)
            elif entry.is_file() and path.suffix.lower() in SUPPORTED_EXTENSIONS:
                yield ImageTask(path=path, size=entry.stat().st_size, root=root)
        except OSError as e:
            report(Failure.from_error(path, EnumerationError(e.strerror or str(e))))

    for path in subdirs:
        try:
            children = _scan(path)
        except OSError as e:
            report(Failure.from_error(path, EnumerationError(e.strerror or str(e))))
            continue
        yield from _walk(root, children, depth + 1, max_depth, report, excluded)


def iter_images(root: Path | str, max_depth: int | None = DEFAULT_MAX_DEPTH,
                on_error: Callable[[Failure], None] | None = None,
                exclude: Iterable[Path] = ()) -> Iterator[ImageTask]:
    """
    Lazily find images below root, at most max_depth directory levels down.

    A root that is a file is yielded as-is, whatever its extension. Unreadable
    entries go to on_error and are skipped; an unreadable root raises
    RootAccessError before anything is yielded.
    """
    root = Path(root)
    try:
        root_stat = root.stat()
        if not stat.S_ISDIR(root_stat.st_mode):
            return iter([ImageTask(path=root, size=root_stat.st_size, root=root.parent)])
        entries = _scan(root)
    except OSError as e:
        raise RootAccessError(f"Cannot access {root}: {e.strerror or e}") from e

    report = on_error or (lambda failure: None)
    excluded = {Path(p).resolve() for p in exclude}
    return _walk(root, entries, 0, max_depth, report, excluded)


# ── Decoding & Encoding ──────────────────────────────────────────────────────

def read_exif(img: Image.Image, path: Path) -> bytes | None:
    """EXIF bytes from the image, or None when there is nothing usable."""
    try:
        if 'exif' in img.info:
            exif_dict = piexif.load(img.info['exif'])
        elif path.suffix.lower() in EXIF_SOURCE_EXTENSIONS:
            exif_dict = piexif.load(str(path))
        else:
            return None
        if not any(exif_dict.get(ifd) for ifd in ('0th', 'Exif', 'GPS', '1st')):
            return None
        # The embedded thumbnail belongs to the old encoding
        exif_dict.pop('thumbnail', None)
        exif_dict['1st'] = {}
        return piexif.dump(exif_dict)
    except (ValueError, KeyError, IndexError, struct.error):
        # Broken metadata never fails a conversion
        return None


def normalize_mode(img: Image.Image) -> Image.Image:
    """Return a copy in a mode the WebP encoder accepts."""
    if img.mode in WEBP_MODES:
        return img.copy()
    if 'A' in img.getbands() or 'transparency' in img.info:
        return img.convert('RGBA')
    return img.convert('RGB')


def decode_image(path: Path) -> DecodedImage:
    """Open any Pillow-readable image. Format sniffing is left to Pillow."""
    try:
        with Image.open(path) as img:
            img.load()
            exif_bytes = read_exif(img, Path(path))
            pixels = normalize_mode(img)
    except Exception as e:
        raise DecodeError(str(e)) from e
    return DecodedImage(pixels=pixels, exif=exif_bytes)


class PillowWebPEncoder:
    """Encodes decoded images with Pillow's WebP plugin."""

    def encode(self, image: DecodedImage, config: EncodingConfig) -> bytes:
        save_kwargs = {
            'quality': config.quality,
            'lossless': config.lossless,
            'method': config.method,
        }
        if config.keep_metadata and image.exif:
            save_kwargs['exif'] = image.exif

        buffer = io.BytesIO()
        try:
            image.pixels.save(buffer, 'WEBP', **save_kwargs)
        except Exception as e:
            raise EncodeError(str(e)) from e
        return buffer.getvalue()


# ── Conversion Job ───────────────────────────────────────────────────────────

def decide(original_size: int, encoded_size: int, keep_original_if_smaller: bool) -> Decision:
    """
    Choose between writing the encoded file and keeping the original.

    With keep_original_if_smaller, a tie keeps the original: rewriting a file
    for no gain is pointless.
    """
    if keep_original_if_smaller and encoded_size >= original_size:
        return Decision.KEEP_ORIGINAL
    return Decision.REPLACE


def write_atomic(path: Path, data: bytes) -> None:
    """Write through a temp file in the target directory, then rename it over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = 0o666 & ~UMASK
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.stem}.', suffix='.webp.tmp')
    try:
        with os.fdopen(fd, 'wb') as fh:
            fh.write(data)
        # mkstemp creates 0600; give the result the permissions a plain open() would
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except OSError:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def convert_one(task: ImageTask, config: EncodingConfig, encoder=None,
                decoder: Callable[[Path], DecodedImage] = decode_image) -> ConversionOutcome:
    """Decode, encode, decide and write one image. Never raises for per-file problems."""
    start = time.perf_counter()
    encoder = encoder or PillowWebPEncoder()
    output_path = get_output_path(task, config.output_dir)

    stage = DecodeError
    try:
        decoded = decoder(task.path)
        stage = EncodeError
        data = encoder.encode(decoded, config)
        stage = WriteError

        if decide(task.size, len(data), config.keep_original_if_smaller) is Decision.KEEP_ORIGINAL:
            return ConversionOutcome(
                path=task.path, ok=True, original_size=task.size,
                action=Action.KEPT_ORIGINAL, encoded_size=len(data),
                elapsed=time.perf_counter() - start,
            )

        try:
            write_atomic(output_path, data)
        except OSError as e:
            raise WriteError(f"{output_path}: {e.strerror or e}") from e

        if config.replace and output_path != task.path:
            try:
                task.path.unlink()
            except OSError as e:
                raise WriteError(f"wrote {output_path.name} but could not remove original: {e.strerror or e}") from e

    except Exception as e:
        # Anything a plugged-in decoder or encoder raises is charged to the stage it came from
        error = e if isinstance(e, (DecodeError, EncodeError, WriteError)) else stage(f"{type(e).__name__}: {e}")
        return ConversionOutcome(
            path=task.path, ok=False, original_size=task.size, action=Action.SKIPPED,
            error=Failure.from_error(task.path, error), elapsed=time.perf_counter() - start,
        )

    return ConversionOutcome(
        path=task.path, ok=True, original_size=task.size, action=Action.REPLACED,
        output_size=len(data), encoded_size=len(data), output_path=output_path,
        elapsed=time.perf_counter() - start,
    )


# ── Aggregation ──────────────────────────────────────────────────────────────

class ResultAggregator:
    """
    Collects outcomes from any number of worker threads.

    Every mutation happens under one lock, so counters never lose updates.
    Byte totals only cover successful jobs; a kept original counts its own
    size as output.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._started = time.perf_counter()
        self._total = 0
        self._converted = 0
        self._kept = 0
        self._failed = 0
        self._input_bytes = 0
        self._output_bytes = 0
        self._failures: list[Failure] = []
        self._summary: RunSummary | None = None

    def record(self, outcome: ConversionOutcome) -> None:
        with self._lock:
            self._check_open()
            self._total += 1
            if not outcome.ok:
                self._failed += 1
                self._failures.append(outcome.error or Failure(outcome.path, 'error', 'unknown error'))
            elif outcome.action is Action.KEPT_ORIGINAL:
                self._kept += 1
                self._input_bytes += outcome.original_size
                self._output_bytes += outcome.original_size
            else:
                self._converted += 1
                self._input_bytes += outcome.original_size
                self._output_bytes += outcome.output_size or 0

    def record_failure(self, failure: Failure) -> None:
        """Record a problem that is not tied to a job (e.g. an unreadable directory)."""
        with self._lock:
            self._check_open()
            self._failures.append(failure)

    def finalize(self, cancelled: bool = False) -> RunSummary:
        with self._lock:
            self._check_open()
            self._summary = RunSummary(
                total_files=self._total,
                total_converted=self._converted,
                total_kept_original=self._kept,
                total_failed=self._failed,
                input_bytes=self._input_bytes,
                output_bytes=self._output_bytes,
                elapsed=time.perf_counter() - self._started,
                failures=tuple(sorted(self._failures, key=lambda f: (str(f.path), f.kind))),
                cancelled=cancelled,
            )
            return self._summary

    def _check_open(self) -> None:
        if self._summary is not None:
            raise RuntimeError("aggregator already finalized")


# ── Worker Pool ──────────────────────────────────────────────────────────────

class WorkerPool:
    """Runs conversion jobs on a bounded thread pool."""

    def __init__(self, config: EncodingConfig, workers: int | None = None,
                 encoder=None, decoder: Callable[[Path], DecodedImage] | None = None):
        self.config = config
        self.workers = resolve_workers(workers)
        self.encoder = encoder or PillowWebPEncoder()
        self.decoder = decoder or decode_image

    def _job(self, task: ImageTask, aggregator: ResultAggregator) -> ConversionOutcome:
        outcome = convert_one(task, self.config, self.encoder, self.decoder)
        aggregator.record(outcome)
        return outcome

    def run(self, tasks: Iterable[ImageTask], aggregator: ResultAggregator,
            stop_event: threading.Event | None = None,
            on_outcome: Callable[[ConversionOutcome], None] | None = None) -> RunSummary:
        """
        Convert every task and return the finalized summary.

        Tasks are pulled lazily, never more than `workers` in flight. Once
        stop_event is set nothing new is dispatched; running jobs finish.
        Output collisions are only detected between consecutive tasks sharing
        an output folder, which is how iter_images orders them.
        """
        stop_event = stop_event or threading.Event()
        task_iter = iter(tasks)
        claimed: dict[Path, Path] = {}
        claimed_dir: Path | None = None
        pending = set()
        exhausted = False

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='webpcrunch') as executor:
            while True:
                while not exhausted and len(pending) < self.workers and not stop_event.is_set():
                    task = next(task_iter, None)
                    if task is None:
                        exhausted = True
                        break

                    # Two sources (photo.jpg, photo.png) must never share an output.
                    # Claims are per output folder, so memory stays bounded by the largest folder.
                    output_path = get_output_path(task, self.config.output_dir)
                    if output_path.parent != claimed_dir:
                        claimed.clear()
                        claimed_dir = output_path.parent
                    owner = claimed.get(output_path)
                    if owner is not None and output_path == task.path:
                        # photo.webp written by an earlier run for photo.png
                        continue
                    if owner is not None:
                        outcome = ConversionOutcome(
                            path=task.path, ok=False, original_size=task.size, action=Action.SKIPPED,
                            error=Failure.from_error(task.path, WriteError(
                                f"output {output_path.name} already targeted by {owner.name}")),
                        )
                        aggregator.record(outcome)
                        if on_outcome:
                            on_outcome(outcome)
                        continue
                    claimed[output_path] = task.path
                    pending.add(executor.submit(self._job, task, aggregator))

                if not pending:
                    break

                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    outcome = future.result()
                    if on_outcome:
                        on_outcome(outcome)

        return aggregator.finalize(cancelled=stop_event.is_set() and not exhausted)


def run(root_path: Path | str, config: EncodingConfig, *, workers: int | None = None,
        encoder=None, decoder: Callable[[Path], DecodedImage] | None = None,
        stop_event: threading.Event | None = None,
        on_outcome: Callable[[ConversionOutcome], None] | None = None) -> RunSummary:
    """Convert every image under root_path and return the run summary."""
    pool = WorkerPool(config, workers=workers, encoder=encoder, decoder=decoder)
    aggregator = ResultAggregator()
    exclude = [config.output_dir] if config.output_dir is not None else []
    tasks = iter_images(root_path, config.max_depth, on_error=aggregator.record_failure, exclude=exclude)
    return pool.run(tasks, aggregator, stop_event=stop_event, on_outcome=on_outcome)


# ── Summary Table ────────────────────────────────────────────────────────────

def format_outcome(outcome: ConversionOutcome) -> str:
    """One progress line for a finished job."""
    name = outcome.path.name
    if not outcome.ok:
        return f"  {C.RED}✗{C.RESET} {name}: {outcome.error.kind}: {outcome.error.detail}"
    if outcome.action is Action.KEPT_ORIGINAL:
        return (f"  {C.YELLOW}={C.RESET} {name} {C.DIM}kept original "
                f"({format_bytes(outcome.original_size)} ≤ {format_bytes(outcome.encoded_size)}){C.RESET}")
    return (f"  {C.GREEN}✓{C.RESET} {name} {C.DIM}{format_bytes(outcome.original_size)} → "
            f"{format_bytes(outcome.output_size)} ({format_duration(outcome.elapsed)}){C.RESET}")


def print_summary(summary: RunSummary):
    """Print a styled summary table after processing."""
    print()
    print(f"{C.CYAN}{'═' * 52}{C.RESET}")
    print(f"{C.BOLD}  📊  Conversion Summary{C.RESET}")
    print(f"{C.CYAN}{'═' * 52}{C.RESET}")

    print(f"  {C.BOLD}Images seen:{C.RESET}       {summary.total_files}")
    print(f"  {C.BOLD}Converted:{C.RESET}         {C.GREEN}{summary.total_converted}{C.RESET}")
    if summary.total_kept_original > 0:
        print(f"  {C.BOLD}Kept original:{C.RESET}     {C.YELLOW}{summary.total_kept_original}{C.RESET}")
    if summary.total_failed > 0:
        print(f"  {C.BOLD}Errors:{C.RESET}            {C.RED}{summary.total_failed}{C.RESET}")

    print(f"{C.DIM}{'─' * 52}{C.RESET}")

    if summary.input_bytes > 0:
        pct = summary.reduction_percent
        arrow = '↓' if pct > 0 else '↑'
        color = C.GREEN if pct > 0 else C.RED
        print(f"  {C.BOLD}Input size:{C.RESET}        {format_bytes(summary.input_bytes)}")
        print(f"  {C.BOLD}Output size:{C.RESET}       {format_bytes(summary.output_bytes)}")
        print(f"  {C.BOLD}Reduction:{C.RESET}         {color}{arrow} {abs(pct):.1f}%{C.RESET}  "
              f"({format_bytes(abs(summary.saved_bytes))})")

    print(f"  {C.BOLD}Time elapsed:{C.RESET}      {format_duration(summary.elapsed)}")

    done = summary.total_converted + summary.total_kept_original
    if done > 0 and summary.elapsed > 0:
        print(f"  {C.BOLD}Speed:{C.RESET}             {done / summary.elapsed:.1f} images/sec")

    print(f"{C.CYAN}{'═' * 52}{C.RESET}")

    if summary.cancelled:
        print(f"\n  {C.YELLOW}⚠️  Run cancelled, remaining images were not processed{C.RESET}")

    if summary.failures:
        print(f"\n  {C.YELLOW}⚠️  {len(summary.failures)} problem(s):{C.RESET}")
        for failure in summary.failures:
            print(f"    {C.RED}✗{C.RESET} {failure.path} {C.DIM}[{failure.kind}]{C.RESET} {failure.detail}")


# ── Main ─────────────────────────────────────────────────────────────────────

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_FAILURES = 3
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='webpcrunch',
        description='Batch convert images to WebP.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  webpcrunch /path/to/images
  webpcrunch /path/to/images --no-lossless --quality 80
  webpcrunch /path/to/images --keep-original-if-smaller --replace
  webpcrunch photo.png -o /path/to/output
        """
    )
    parser.add_argument('input', help='Image file or folder to convert')
    parser.add_argument('-o', '--output', help='Output folder, mirrors the input tree (default: next to each image)')
    parser.add_argument('-q', '--quality', type=int, default=DEFAULT_QUALITY,
                        help=f'Quality 0-100 (default: {DEFAULT_QUALITY})')
    parser.add_argument('--lossless', action=argparse.BooleanOptionalAction, default=DEFAULT_LOSSLESS,
                        help='Lossless encoding (default: on)')
    parser.add_argument('-m', '--method', type=int, default=DEFAULT_METHOD,
                        help=f'Encoding effort 0-6, higher is slower and smaller (default: {DEFAULT_METHOD})')
    parser.add_argument('--max-depth', type=int, default=DEFAULT_MAX_DEPTH,
                        help=f'Folder levels to descend, negative for unlimited (default: {DEFAULT_MAX_DEPTH})')
    parser.add_argument('--keep-original-if-smaller', action='store_true',
                        help='Do not write the WebP when it is not smaller than the original')
    parser.add_argument('--replace', action='store_true',
                        help='Delete originals after a successful conversion (destructive)')
    parser.add_argument('--no-metadata', action='store_true',
                        help='Drop EXIF metadata instead of copying it')
    parser.add_argument('-j', '--workers', type=int, default=None,
                        help=f'Parallel workers, capped at the CPU count (default: {MAX_WORKERS})')
    return parser


@contextlib.contextmanager
def stop_on_signals(stop_event: threading.Event):
    """First SIGINT/SIGTERM stops dispatching, the second one aborts."""
    def handler(signum, frame):
        if stop_event.is_set():
            raise KeyboardInterrupt
        stop_event.set()
        tqdm.write(f"\n  {C.YELLOW}⚠️  Finishing in-flight images, press Ctrl+C again to abort{C.RESET}")

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if not HEIF_AVAILABLE:
        print(f"{C.DIM}pillow-heif not installed, HEIC/AVIF images will fail to decode{C.RESET}")

    try:
        config = EncodingConfig(
            quality=args.quality,
            lossless=args.lossless,
            method=args.method,
            keep_original_if_smaller=args.keep_original_if_smaller,
            max_depth=None if args.max_depth < 0 else args.max_depth,
            output_dir=Path(args.output).resolve() if args.output else None,
            replace=args.replace,
            keep_metadata=not args.no_metadata,
        )
        workers = resolve_workers(args.workers)
    except ConfigError as e:
        print(f"{C.RED}Error: {e}{C.RESET}")
        return EXIT_FATAL

    input_path = Path(args.input).resolve()

    print()
    print(f"  {C.BOLD}Input:{C.RESET}           {input_path}")
    if config.output_dir:
        print(f"  {C.BOLD}Output folder:{C.RESET}   {config.output_dir}")
    mode = 'lossless' if config.lossless else 'lossy'
    print(f"  {C.BOLD}Encoding:{C.RESET}        {C.CYAN}WEBP{C.RESET} {mode}, quality {config.quality}, method {config.method}")
    print(f"  {C.BOLD}Max depth:{C.RESET}       {'unlimited' if config.max_depth is None else config.max_depth}")
    if config.keep_original_if_smaller:
        print(f"  {C.BOLD}Policy:{C.RESET}          keep original unless WebP is smaller")
    if config.replace:
        print(f"  {C.BOLD}Mode:{C.RESET}            {C.YELLOW}⚠️  Replace originals{C.RESET}")
    print(f"  {C.BOLD}Workers:{C.RESET}         {workers}")
    print(f"{C.DIM}{'─' * 60}{C.RESET}")

    stop_event = threading.Event()
    progress = tqdm(
        desc=f"  {C.CYAN}Converting{C.RESET}",
        unit='img',
        disable=None,
        ncols=80,
    )

    def on_outcome(outcome: ConversionOutcome):
        progress.set_postfix_str(outcome.path.name[-30:], refresh=False)
        tqdm.write(format_outcome(outcome))
        progress.update(1)

    try:
        with stop_on_signals(stop_event):
            summary = run(input_path, config, workers=workers,
                          stop_event=stop_event, on_outcome=on_outcome)
    except RootAccessError as e:
        print(f"{C.RED}Error: {e}{C.RESET}")
        return EXIT_FATAL
    except KeyboardInterrupt:
        print(f"\n  {C.RED}Aborted.{C.RESET}")
        return EXIT_CANCELLED
    finally:
        progress.close()

    if summary.total_files == 0 and not summary.failures:
        print(f"{C.YELLOW}No images found!{C.RESET}")
        return EXIT_OK

    print_summary(summary)

    if summary.cancelled:
        return EXIT_CANCELLED
    if summary.failures:
        return EXIT_FAILURES
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
