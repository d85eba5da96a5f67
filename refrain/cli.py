"""REFRAIN CLI."""

import logging
import multiprocessing
import os
import shutil
import sys
from pathlib import Path

import click
from tqdm import tqdm

from .config import AUDIO_EXTENSIONS, DB_PATH, INPUT_STEM, OVERLAP, SAMPLE_RATE, TOP_RESULTS, WINDOW_MS
from .features import ConfigurationError, extract, file_hash, frame_geometry
from .logging_config import setup_logger
from .similarity import SLIDE_INPUT, RankedMatch, rank
from .store import Store


# ---------------------------------------------------------------------------
# Parallel parse worker (runs in subprocess — no DB access here)
# ---------------------------------------------------------------------------

def _parse_worker(args: tuple) -> dict:
    """
    Fingerprint one file. Runs in a worker process.
    Returns a plain dict so it's picklable.
    """
    path_str, window_ms, overlap = args
    result = {"path": path_str, "fhash": None, "fp": None, "error": None}
    try:
        result["fhash"] = file_hash(path_str)
        result["fp"] = extract(path_str, window_ms, overlap)
    except Exception as e:
        result["error"] = str(e)
    return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _audio_files(directory: Path) -> list[Path]:
    return sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in AUDIO_EXTENSIONS
    )


def _find_input_file(directory: Path) -> Path | None:
    """First input.<audio ext> in directory, case-insensitive."""
    for p in _audio_files(directory):
        if p.stem.lower() == INPUT_STEM:
            return p
    return None


def _check_geometry(window_ms: float, overlap: float):
    try:
        frame_geometry(SAMPLE_RATE, window_ms, overlap)
    except ConfigurationError as e:
        raise click.UsageError(str(e))


def _tier(value: float, good: float, fair: float, higher_is_better: bool = True) -> str:
    if higher_is_better:
        return "green" if value >= good else "yellow" if value >= fair else "red"
    return "green" if value < good else "yellow" if value < fair else "red"


def _fmt_avg(m: RankedMatch) -> str:
    return click.style(f"{m.avg_diff:.1f}", fg=_tier(m.avg_diff, 5, 15, higher_is_better=False))


def _fmt_quality(m: RankedMatch) -> str:
    return click.style(f"{m.match_quality_percent:.1f}%", fg=_tier(m.match_quality_percent, 50, 30))


def _fmt_conf(m: RankedMatch) -> str:
    return click.style(f"{m.confidence:.1f}%", fg=_tier(m.confidence, 80, 50))


RANK_COLORS = ["green", "yellow", "blue"]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log pipeline progress to stderr.")
def cli(verbose: bool):
    """REFRAIN — melodic contour audio identification.

    Index songs by the shape of their dominant pitch line, then identify clips against them.
    """
    setup_logger(level=logging.DEBUG if verbose else logging.WARNING)


window_option = click.option("--window", "window_ms", default=WINDOW_MS, show_default=True, type=float,
                             help="Analysis window in milliseconds.")
overlap_option = click.option("--overlap", default=OVERLAP, show_default=True,
                              type=click.FloatRange(0.0, 1.0, max_open=True), help="Window overlap ratio.")
parse_workers_option = click.option("--workers", "-j", default=None, type=int,
                                    help="Parallel decode workers (default: CPU count).")
detect_workers_option = click.option("--workers", "-j", default=1, show_default=True, type=click.IntRange(min=1),
                                     help="Parallel match workers.")
db_option = click.option("--db", type=click.Path(path_type=Path), default=None,
                         help="Database path (default: ~/.refrain/library.db).")


@cli.command()
@click.argument("input_dir", default="./audio_input",
                type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--processed-dir", default="./audio_processed", type=click.Path(file_okay=False, path_type=Path),
              show_default=True, help="Where successfully indexed files are moved.")
@click.option("--update", is_flag=True, help="Skip files whose content is already indexed.")
@window_option
@overlap_option
@parse_workers_option
@db_option
def parse(input_dir: Path, processed_dir: Path, update: bool, window_ms: float, overlap: float,
          workers: int | None, db: Path | None):
    """Fingerprint every audio file in INPUT_DIR and add it to the library."""
    _check_geometry(window_ms, overlap)
    db_path = db or DB_PATH
    n_workers = workers or os.cpu_count() or 4

    audio_files = _audio_files(input_dir)
    click.echo(f"Found {len(audio_files)} audio files in {input_dir}")

    if update and audio_files:
        with Store(db_path) as store:
            filtered = [p for p in audio_files if not store.has_file_hash(file_hash(p))]
        click.echo(f"Skipping {len(audio_files) - len(filtered)} indexed files, processing {len(filtered)}.")
        audio_files = filtered

    if not audio_files:
        click.echo("Nothing to do.")
        return

    processed_dir.mkdir(parents=True, exist_ok=True)
    work_args = [(str(p), window_ms, overlap) for p in audio_files]
    processed = 0
    failed = 0

    # Workers handle all CPU-bound work; main process owns the DB connection.
    with Store(db_path) as store:
        with tqdm(total=len(work_args), unit="file") as pbar:
            if n_workers > 1 and len(work_args) > 1:
                pool = multiprocessing.Pool(processes=min(n_workers, len(work_args)))
                results = pool.imap_unordered(_parse_worker, work_args)
            else:
                pool = None
                results = map(_parse_worker, work_args)
            try:
                for result in results:
                    pbar.update(1)
                    path = Path(result["path"])
                    if result["error"] or result["fp"] is None or len(result["fp"]) == 0:
                        tqdm.write(f"FAILED {path.name}: {result['error'] or 'no usable fingerprint'}")
                        failed += 1
                        continue
                    # A file that cannot be moved is not indexed
                    try:
                        shutil.move(str(path), str(processed_dir / path.name))
                    except OSError as e:
                        tqdm.write(f"FAILED {path.name}: could not move to {processed_dir}: {e}")
                        failed += 1
                        continue
                    song_id = store.add_song(
                        name=path.name,
                        fingerprint=result["fp"],
                        file_hash=result["fhash"],
                        window_ms=window_ms,
                        overlap=overlap,
                    )
                    tqdm.write(f"Added {path.name} ({len(result['fp'])} values) as {song_id}")
                    processed += 1
            finally:
                if pool is not None:
                    pool.close()
                    pool.join()
        total = store.stats()["total_songs"]

    click.echo(f"Processed: {processed}")
    click.echo(f"Failed: {failed}")
    click.echo(f"Total songs in database: {total}")


@cli.command()
@click.option("--input", "input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None,
              help="Query clip (default: ./input.<ext>).")
@click.option("--top", "top", default=TOP_RESULTS, show_default=True, type=click.IntRange(min=1),
              help="Number of ranked results to list; 1 hides the list.")
@click.option("--exhaustive", is_flag=True, help="Evaluate every alignment offset.")
@window_option
@overlap_option
@detect_workers_option
@db_option
def detect(input_path: Path | None, top: int, exhaustive: bool, window_ms: float, overlap: float,
           workers: int, db: Path | None):
    """Identify a clip against the library."""
    _check_geometry(window_ms, overlap)
    db_path = db or DB_PATH

    with Store(db_path) as store:
        songs = store.all_songs()
    if not songs:
        click.echo("Library is empty. Run `refrain parse` first.", err=True)
        sys.exit(1)

    if input_path is None:
        input_path = _find_input_file(Path.cwd())
        if input_path is None:
            exts = ", ".join(sorted(e.lstrip(".") for e in AUDIO_EXTENSIONS))
            click.echo(f"No input file found. Expected {INPUT_STEM}.<ext> ({exts}) or --input PATH.", err=True)
            sys.exit(1)

    click.echo(f"Extracting fingerprint from {input_path.name}...")
    try:
        fp = extract(input_path, window_ms, overlap)
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if len(fp) == 0:
        click.echo("Failed to process input audio: empty fingerprint.", err=True)
        sys.exit(1)

    click.echo(f"Matching {len(fp)} values against {len(songs)} songs...\n")
    results = rank(fp, songs, workers=workers, exhaustive=exhaustive)

    for i, m in enumerate(results):
        color = RANK_COLORS[i] if i < len(RANK_COLORS) else "bright_black"
        meta = click.style(f"[{len(m.song.fingerprint)} values, {m.strategy}]", dim=True)
        click.echo(f"{click.style(m.name, fg=color)} {meta}: "
                   f"avg_diff={_fmt_avg(m)}, quality={_fmt_quality(m)}, conf={_fmt_conf(m)}")

    best = results[0]
    rule = click.style("═" * 60, fg="cyan", bold=True)
    click.echo(f"\n{rule}\n{click.style('TOP MATCH', fg='cyan', bold=True)}\n{rule}")
    click.echo(f"{click.style('Song:', bold=True)} {click.style(best.name, fg='green')}")
    click.echo(f"{click.style('Average Difference:', bold=True)} {_fmt_avg(best)} per value")
    click.echo(f"{click.style('Match Quality:', bold=True)} {_fmt_quality(best)} of frames matched well")
    click.echo(f"{click.style('Position:', bold=True)} {best.position} frames")
    strategy = "Input slid across song" if best.strategy == SLIDE_INPUT else "Song compared to input windows"
    click.echo(f"{click.style('Strategy:', bold=True)} {strategy}")
    click.echo(f"{click.style('Confidence:', bold=True)} {_fmt_conf(best)} (relative to other songs)")
    click.echo(click.style("═" * 60, fg="cyan"))

    if top > 1 and len(results) > 1:
        n = min(top, len(results))
        click.echo("\n" + click.style(f"TOP {n} RESULTS", fg="yellow", bold=True))
        click.echo(click.style("─" * 60, fg="yellow"))
        for rank_no, m in enumerate(results[:n], 1):
            click.echo(f"{rank_no:2d}. {click.style(m.name, bold=True)}\n"
                       f"    avg_diff: {_fmt_avg(m)} | quality: {_fmt_quality(m)} | conf: {_fmt_conf(m)}")
        click.echo(click.style("─" * 60, fg="yellow"))


@cli.command()
@db_option
def stats(db: Path | None):
    """Show library statistics."""
    db_path = db or DB_PATH
    with Store(db_path) as store:
        s = store.stats()
        click.echo(f"Songs:              {s['total_songs']}")
        click.echo(f"Fingerprinted:      {s['fingerprinted']}")
        click.echo(f"Fingerprint values: {s['fingerprint_values']}")
        click.echo(f"Database:           {db_path}")


@cli.command("export")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@db_option
def export_db(path: Path, db: Path | None):
    """Write the library to PATH as flat JSON."""
    with Store(db or DB_PATH) as store:
        n = store.export_json(path)
    click.echo(f"Exported {n} songs to {path}")


@cli.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@db_option
def import_db(path: Path, db: Path | None):
    """Add songs from a flat JSON database at PATH."""
    with Store(db or DB_PATH) as store:
        n = store.import_json(path)
    click.echo(f"Imported {n} songs from {path}")


if __name__ == "__main__":
    cli()
