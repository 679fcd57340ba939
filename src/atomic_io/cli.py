"""CLI entry point: atomically replace a file with standard input.

Works like ``sponge``: because the target is only replaced once all input
has been copied, a pipeline may read from the file it writes to:

    sort settings.txt | atomic-write settings.txt
"""

import shutil
import sys
from pathlib import Path

import click

from atomic_io import __version__
from atomic_io.logging import init_logger
from atomic_io.writer import remove_stale_temp_files, with_output_file

EXIT_INTERRUPTED = 130


def _suggestion_for(error: OSError, parents: bool) -> str | None:
    if isinstance(error, FileNotFoundError) and not parents:
        return "Create the directory first, or pass --parents"
    if isinstance(error, PermissionError):
        return (
            "Check write access to the target directory; keeping the owner of "
            "a file owned by someone else requires privilege"
        )
    if isinstance(error, IsADirectoryError):
        return "The target path is a directory"
    return None


@click.command()
@click.version_option(version=__version__, prog_name="atomic-write")
@click.argument("target", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--input",
    "-i",
    "source",
    type=click.File("rb"),
    default="-",
    help="Read from this file instead of standard input",
)
@click.option("--parents", "-p", is_flag=True, help="Create missing parent directories")
@click.option("--durable", is_flag=True, help="fsync the file and its directory")
@click.option(
    "--clean",
    is_flag=True,
    help="Remove temp files left next to TARGET by a crashed writer, then exit",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
def main(target: Path, source, parents: bool, durable: bool, clean: bool, verbose: bool):
    """Atomically replace TARGET with the contents of standard input.

    Mode and ownership of an existing TARGET are preserved. On any error
    TARGET is left untouched.
    """
    logger = init_logger(verbose=verbose)

    if clean:
        try:
            removed = remove_stale_temp_files(target)
        except OSError as e:
            logger.exception("Failed to remove temp files", e)
            sys.exit(1)
        for path in removed:
            click.echo(f"Removed {path}")
        return

    def copy_input(f) -> int:
        shutil.copyfileobj(source, f)
        return f.tell()

    try:
        if parents:
            target.parent.mkdir(parents=True, exist_ok=True)
        copied = with_output_file(
            target,
            copy_input,
            binary=True,
            durable=durable,
        )
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        sys.exit(EXIT_INTERRUPTED)
    except OSError as e:
        logger.exception(f"Failed to write {target}", e, suggestion=_suggestion_for(e, parents))
        sys.exit(1)

    logger.debug("Wrote file", target=str(target), bytes=copied)


if __name__ == "__main__":
    main()
