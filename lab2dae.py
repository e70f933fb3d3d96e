"""
LAB -> COLLADA converter
Converts bone animation (.lab) files to COLLADA (.dae) joint hierarchies with animation curves
"""
import logging
import os
import sys
import tempfile
from pathlib import Path

from labanim.collada_writer import convert_animation, import_collada
from labanim.debug_console import DebugConsole
from labanim.errors import LabError, UnsupportedOperationError
from labanim.lab_parser import LabParser

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_UNSUPPORTED = 3


class LabConverter:
    """Converts one .lab file, or every .lab file under a folder"""

    DEFAULT_OUTPUT = None  # next to the input file
    OUTPUT_EXTENSION = ".dae"

    def __init__(self, output_folder=None, author=None):
        self.output_folder = Path(output_folder) if output_folder else self.DEFAULT_OUTPUT
        self.author = author

        if self.output_folder is not None:
            self.output_folder.mkdir(parents=True, exist_ok=True)

    def output_path_for(self, lab_path: Path) -> Path:
        folder = self.output_folder if self.output_folder is not None else lab_path.parent
        return folder / f"{lab_path.stem}{self.OUTPUT_EXTENSION}"

    def convert_file(self, lab_path: Path) -> Path:
        """Convert a single file; raises LabError without creating any output on failure"""
        if lab_path.suffix.lower() != LabParser.LAB_EXTENSION:
            raise ValueError(f"Not a {LabParser.LAB_EXTENSION} file: {lab_path}")

        DebugConsole.info(f"Processing: {lab_path.name}")
        document = convert_animation(lab_path, author=self.author)

        output_path = self.output_path_for(lab_path)
        write_atomically(output_path, document)
        DebugConsole.info(f"  [OK] Saved: {output_path}")
        return output_path

    def batch_process(self, input_path: Path) -> int:
        """Convert a file or folder; returns the number of failures"""
        if input_path.is_dir():
            lab_files = sorted(
                p for p in input_path.rglob("*") if p.suffix.lower() == LabParser.LAB_EXTENSION
            )
            if not lab_files:
                DebugConsole.warning(f"No {LabParser.LAB_EXTENSION} files found in {input_path}")
                return 0
        else:
            lab_files = [input_path]

        failed = 0
        for idx, lab_file in enumerate(lab_files, 1):
            if len(lab_files) > 1:
                DebugConsole.info(f"[{idx}/{len(lab_files)}] {lab_file}")
            try:
                self.convert_file(lab_file)
            except (LabError, OSError) as e:
                DebugConsole.error(f"  [ERROR] {lab_file}: {e}")
                failed += 1

        if len(lab_files) > 1:
            DebugConsole.info(f"Completed: {len(lab_files) - failed}/{len(lab_files)} files")
        return failed


def current_umask() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return umask


def write_atomically(path: Path, text: str):
    """Write through a temporary file so a failed write never leaves a partial document"""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
        # mkstemp creates 0600; give the document the mode a plain open() would
        os.chmod(tmp_name, 0o666 & ~current_umask())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def build_arg_parser():
    import argparse

    parser = argparse.ArgumentParser(description="Convert LAB bone animation files to COLLADA")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    convert = subparsers.add_parser("convert", help="Convert .lab file(s) to .dae")
    convert.add_argument("input", type=Path, help="A .lab file or a folder containing .lab files")
    convert.add_argument("--output-dir", "-o", type=Path, default=None,
                         help="Folder to write .dae files to (default: next to each input)")
    convert.add_argument("--author", default=None,
                         help="Author written to the document's asset block")

    reverse = subparsers.add_parser("import", help="Convert a .dae file back to .lab (not supported)")
    reverse.add_argument("input", type=Path, help="A .dae file")
    return parser


def main(argv=None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command == "import":
        try:
            import_collada(args.input)
        except UnsupportedOperationError as e:
            DebugConsole.error(f"Unsupported operation: {e}")
        return EXIT_UNSUPPORTED

    if not args.input.exists():
        DebugConsole.error(f"Input not found: {args.input}")
        return EXIT_USAGE
    if args.input.is_file() and args.input.suffix.lower() != LabParser.LAB_EXTENSION:
        DebugConsole.error(f"Input must be a {LabParser.LAB_EXTENSION} file: {args.input}")
        return EXIT_USAGE

    converter = LabConverter(args.output_dir, author=args.author)
    failed = converter.batch_process(args.input)
    return EXIT_FAILED if failed else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
