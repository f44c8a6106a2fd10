#!/usr/bin/env python3
"""
Header Cleaner - Normalize the column names in the header line of delimited text files.
Apply an ordered list of literal find/replace rules to every field of the first line.
Leave every data line exactly as it was.

Ideal for CSV-like exports whose column names carry dots, spaces or punctuation
that downstream tools choke on (e.g. "Name.First|Age.Years" -> "NameFirst|AgeYears").

Rules are read from an appsettings.json file:

    {
        "ProcessingSettings": {
            "TargetDirectory": "/data/exports",
            "FilePattern": "*.csv",
            "IncludeSubdirectories": true,
            "ColumnSeparator": "|",
            "Replacements": [
                {"Find": ".", "Replace": ""},
                {"Find": " ", "Replace": "_"}
            ]
        }
    }

Note on file handling:
- Fields are split on the literal separator, quotes are not interpreted
- Files are read as UTF-8, a leading BOM is kept as it was
- A file is only rewritten when its header actually changes

Version: 0.9.0 (Beta)
"""
__version__ = "0.9.0"

import os
import sys
import json
import errno
import shutil
import tempfile
import traceback
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple
from pathlib import Path
import argparse
from colorama import init, Fore, Style

# Initialize colorama for cross-platform color support
init()

SETTINGS_FILENAME = 'appsettings.json'
SETTINGS_SECTION = 'processingsettings'
UTF8_BOM = b'\xef\xbb\xbf'

STATUS_UPDATED = 'updated'
STATUS_UNCHANGED = 'unchanged'
STATUS_EMPTY = 'empty'
STATUS_ERROR = 'error'


def get_debug_level() -> str:
    """
    Get the debug level from environment. Returns one of:
    - 'detail': Show all processing steps (HEADER_CLEANER_DEBUG=detail)
    - 'normal': Show key steps only (HEADER_CLEANER_DEBUG=1 or running tests)
    - 'off': No debug output (default)
    """
    debug_env = os.environ.get('HEADER_CLEANER_DEBUG')
    if debug_env == 'detail':
        return 'detail'
    if 'unittest' in sys.modules or '--debug' in sys.argv or debug_env:
        return 'normal'
    return 'off'


def debug_print(*args, level='normal', **kwargs):
    """Print debug message if level matches current debug level

    Args:
        level: Required debug level ('normal' or 'detail')
    """
    current = get_debug_level()
    if current == 'off':
        return
    if level == 'detail' and current != 'detail':
        return
    print(*args, **kwargs)


class ConfigurationError(ValueError):
    """Raised when the settings are missing or malformed."""


class Substitution(NamedTuple):
    """A literal find/replace rule applied to each header field."""
    find: str
    replace: str = ''


class ProcessingSettings(NamedTuple):
    """Everything the cleaner needs to know, with the defaults of a fresh install."""
    target_directory: str = ''
    file_pattern: str = '*.csv'
    include_subdirectories: bool = True
    separator: str = '|'
    substitutions: Tuple[Substitution, ...] = ()


class HeaderReport(NamedTuple):
    """Outcome of processing one file.

    status is one of 'updated', 'unchanged', 'empty' or 'error'.
    written is False for dry runs and for every status except 'updated'.
    """
    path: str
    status: str
    original: Optional[str] = None
    cleaned: Optional[str] = None
    written: bool = False
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Header transformation
# ---------------------------------------------------------------------------

def clean_header(header: str, separator: str, substitutions: Optional[Sequence[Substitution]]) -> str:
    """
    Apply the substitutions to every field of a header line.

    Each field is cleaned on its own, so a rule can never match across a
    separator. Rules run in the given order, so they can chain:
    [('a', 'b'), ('b', 'c')] turns 'a' into 'c'. Replacement is plain
    str.replace, i.e. left to right and non-overlapping ('aa' in 'aaa'
    only matches once). Rules with an empty find string are skipped.

    Args:
        header: The raw header line, without line terminator
        separator: Literal field separator; an empty separator means one field
        substitutions: Ordered (find, replace) pairs

    Returns:
        str: The cleaned header, or the header itself when there are no rules
    """
    if not substitutions:
        return header
    # Every field walks the rules again, so a generator must not be consumed by the first one
    substitutions = tuple(substitutions)

    fields = header.split(separator) if separator else [header]

    cleaned_fields = []
    for field in fields:
        cleaned = field
        for find, replace in substitutions:
            if not find:
                continue
            cleaned = cleaned.replace(find, replace or '')
        cleaned_fields.append(cleaned)

    return separator.join(cleaned_fields)


def clean_first_line(lines: Optional[Sequence[str]], separator: str,
                     substitutions: Optional[Sequence[Substitution]]) -> List[str]:
    """Return a copy of lines with only the first one cleaned. The input is not modified."""
    if not lines:
        return []

    processed = list(lines)
    processed[0] = clean_header(processed[0], separator, substitutions)
    return processed


# ---------------------------------------------------------------------------
# File handling
# ---------------------------------------------------------------------------

def detect_newline(text: str) -> str:
    """Return the terminator of the first line break in text, '\\n' if there is none."""
    for i, char in enumerate(text):
        if char == '\n':
            return '\n'
        if char == '\r':
            return '\r\n' if text[i + 1:i + 2] == '\n' else '\r'
    return '\n'


def read_lines(path) -> Tuple[List[str], str, str]:
    """
    Read a text file as a list of lines.

    Line endings are normalized (CRLF and CR become LF) and a final line
    terminator does not produce an empty trailing entry.

    Returns:
        Tuple of (lines, encoding, newline) where encoding is 'utf-8-sig' if the
        file started with a BOM and newline is the terminator to write back with:
        the style of the first line break in the file ('\\r\\n', '\\r' or '\\n').

    Raises:
        OSError: File cannot be read
        UnicodeDecodeError: File is not valid UTF-8
    """
    raw = Path(path).read_bytes()
    encoding = 'utf-8-sig' if raw.startswith(UTF8_BOM) else 'utf-8'
    text = raw.decode(encoding)

    newline = detect_newline(text)
    text = text.replace('\r\n', '\n').replace('\r', '\n')

    if not text:
        return [], encoding, newline

    lines = text.split('\n')
    if text.endswith('\n'):
        lines.pop()
    return lines, encoding, newline


def write_lines(path, lines: Sequence[str], encoding: str = 'utf-8', newline: str = '\n') -> None:
    """
    Write lines back to path, each followed by newline.

    The content goes to a temporary file next to path which then replaces it,
    so a failed write leaves the original file as it was.
    """
    content = ''.join(line + newline for line in lines)
    path = Path(path)
    # Replacing through the directory would bypass a read-only file
    if not os.access(str(path), os.W_OK):
        raise PermissionError(errno.EACCES, os.strerror(errno.EACCES), str(path))
    fd, temp_name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=str(path.parent))
    try:
        with open(fd, 'w', encoding=encoding, newline='') as f:
            f.write(content)
        shutil.copymode(str(path), temp_name)
        os.replace(temp_name, str(path))
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise


def apply_to_file(path, separator: str, substitutions: Optional[Sequence[Substitution]],
                  dry_run: bool = False) -> HeaderReport:
    """
    Clean the header of one file in place.

    The file is only rewritten when the cleaned header differs from the
    original. Read and write errors are not caught here, the caller decides
    whether to go on with the next file.

    Args:
        path: File to process
        separator: Literal field separator
        substitutions: Ordered (find, replace) pairs
        dry_run: If True, report what would change without writing

    Returns:
        HeaderReport: 'empty', 'unchanged' or 'updated'
    """
    path = str(path)
    debug_print(f"Processing: {path}", level='detail')

    lines, encoding, newline = read_lines(path)
    if not lines:
        debug_print(f"File is empty: {path}", level='detail')
        return HeaderReport(path, STATUS_EMPTY)

    original = lines[0]
    cleaned = clean_header(original, separator, substitutions)

    if cleaned == original:
        debug_print(f"No changes needed for: {path}", level='detail')
        return HeaderReport(path, STATUS_UNCHANGED, original, cleaned)

    if dry_run:
        return HeaderReport(path, STATUS_UPDATED, original, cleaned, written=False)

    new_lines = clean_first_line(lines, separator, substitutions)
    write_lines(path, new_lines, encoding=encoding, newline=newline)
    debug_print(f"Header updated in: {path}", level='detail')
    return HeaderReport(path, STATUS_UPDATED, original, cleaned, written=True)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

# Normalized key -> ProcessingSettings field
SETTINGS_KEYS = {
    'targetdirectory': 'target_directory',
    'filepattern': 'file_pattern',
    'includesubdirectories': 'include_subdirectories',
    'columnseparator': 'separator',
    'separator': 'separator',
    'replacements': 'substitutions',
    'substitutions': 'substitutions',
}


def _normalize_key(key: str) -> str:
    """'ColumnSeparator', 'column_separator' and 'columnseparator' all map to the same key."""
    return key.replace('_', '').replace('-', '').lower()


def _parse_substitution(entry, index: int) -> Substitution:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Replacement #{index} must be an object with 'Find' and 'Replace'")

    values = {_normalize_key(k): v for k, v in entry.items()}
    find = values.get('find')
    replace = values.get('replace')

    if not isinstance(find, str):
        raise ConfigurationError(f"Replacement #{index}: 'Find' must be a string, got {find!r}")
    if replace is None:
        replace = ''
    elif not isinstance(replace, str):
        raise ConfigurationError(f"Replacement #{index}: 'Replace' must be a string, got {replace!r}")

    if not find:
        debug_print(f"Warning: Replacement #{index} has an empty 'Find' and will be ignored", level='normal')
    return Substitution(find, replace)


def parse_settings(data) -> ProcessingSettings:
    """
    Build ProcessingSettings from the decoded JSON of a settings file.

    Settings may be at the top level or inside a "ProcessingSettings" object.
    Missing keys keep their defaults.

    Raises:
        ConfigurationError: If any value has the wrong type or is empty where it cannot be
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Settings must be a JSON object")

    for key, value in data.items():
        if _normalize_key(key) == SETTINGS_SECTION:
            if not isinstance(value, dict):
                raise ConfigurationError(f"'{key}' must be a JSON object")
            data = value
            break

    values: Dict[str, object] = {}
    for key, value in data.items():
        field = SETTINGS_KEYS.get(_normalize_key(key))
        if field is None:
            debug_print(f"Warning: Unknown setting '{key}' ignored", level='normal')
            continue
        values[field] = value

    target_directory = values.get('target_directory', '')
    if target_directory is None:
        target_directory = ''
    if not isinstance(target_directory, str):
        raise ConfigurationError(f"TargetDirectory must be a string, got {target_directory!r}")

    file_pattern = values.get('file_pattern', '*.csv')
    if not isinstance(file_pattern, str) or not file_pattern:
        raise ConfigurationError(f"FilePattern must be a non-empty string, got {file_pattern!r}")

    include_subdirectories = values.get('include_subdirectories', True)
    if not isinstance(include_subdirectories, bool):
        raise ConfigurationError(f"IncludeSubdirectories must be true or false, got {include_subdirectories!r}")

    separator = values.get('separator', '|')
    if not isinstance(separator, str) or not separator:
        raise ConfigurationError(f"ColumnSeparator must be a non-empty string, got {separator!r}")

    raw_substitutions = values.get('substitutions', [])
    if raw_substitutions is None:
        raw_substitutions = []
    if not isinstance(raw_substitutions, list):
        raise ConfigurationError("Replacements must be a list of {'Find': ..., 'Replace': ...} objects")
    substitutions = tuple(_parse_substitution(entry, i) for i, entry in enumerate(raw_substitutions, 1))

    return ProcessingSettings(
        target_directory=target_directory,
        file_pattern=file_pattern,
        include_subdirectories=include_subdirectories,
        separator=separator,
        substitutions=substitutions,
    )


def find_settings_file(settings_path: Optional[str] = None) -> Optional[str]:
    """Find the settings file in standard locations.

    Args:
        settings_path: Optional path to settings file

    Returns:
        Path to settings file if found, None otherwise
    """
    # Check locations in order of priority
    locations = []

    # 1. Command-line specified path
    if settings_path:
        locations.append(settings_path)

    # 2. Current directory
    locations.append(os.path.join(os.getcwd(), SETTINGS_FILENAME))

    # 3. User's home directory
    home_dir = os.path.expanduser('~')
    locations.append(os.path.join(home_dir, '.config', 'header_cleaner', SETTINGS_FILENAME))

    for location in locations:
        if os.path.isfile(location):
            return location

    return None


def load_settings(settings_path: Optional[str] = None) -> ProcessingSettings:
    """Load settings from appsettings.json.

    Args:
        settings_path: Optional path to settings file. If None, will search in standard locations.

    Returns:
        ProcessingSettings, the defaults if no settings file exists

    Raises:
        ConfigurationError: Explicit settings_path missing, unreadable or invalid
    """
    if settings_path and not os.path.isfile(settings_path):
        raise ConfigurationError(f"Settings file not found: {settings_path}")

    settings_file = find_settings_file(settings_path)
    if not settings_file:
        debug_print("Warning: No settings file found, using defaults", level='normal')
        return ProcessingSettings()

    try:
        with open(settings_file, 'r', encoding='utf-8-sig') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {settings_file}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read settings file {settings_file}: {e}") from e

    settings = parse_settings(data)
    debug_print(f"Loaded {len(settings.substitutions)} replacement rules from {settings_file}", level='normal')
    return settings


# ---------------------------------------------------------------------------
# Batch processing
# ---------------------------------------------------------------------------

def colorize_header(original: str, cleaned: str, separator: str) -> str:
    """Highlight in cyan the fields of cleaned that differ from original."""
    original_fields = original.split(separator) if separator else [original]
    cleaned_fields = cleaned.split(separator) if separator else [cleaned]
    if len(original_fields) != len(cleaned_fields):
        return f"{Fore.CYAN}{cleaned}{Style.RESET_ALL}"

    parts = []
    for before, after in zip(original_fields, cleaned_fields):
        if before != after:
            parts.append(f"{Fore.CYAN}{after}{Style.RESET_ALL}")
        else:
            parts.append(after)
    return separator.join(parts)


class HeaderCleaner:
    """Cleans the headers of every matching file below a directory."""

    def __init__(self, directory: Optional[str] = None, settings: Optional[ProcessingSettings] = None,
                 dry_run: bool = False, settings_path: Optional[str] = None):
        """
        Initialize the HeaderCleaner.

        Args:
            directory (str, optional): Directory to process, overrides TargetDirectory
            settings (ProcessingSettings, optional): Settings to use instead of loading them
            dry_run (bool): If True, only report what would change without writing
            settings_path (str, optional): Path to settings file
        """
        if settings is None:
            settings = load_settings(settings_path)
        if directory:
            settings = settings._replace(target_directory=str(directory))
        if not settings.target_directory:
            raise ConfigurationError("TargetDirectory is not configured")

        self.settings = settings
        self.directory = Path(settings.target_directory)
        self.dry_run = dry_run

    def find_files(self) -> List[Path]:
        """Return matching files, sorted so runs are reproducible."""
        pattern = self.settings.file_pattern
        if self.settings.include_subdirectories:
            candidates = self.directory.rglob(pattern)
        else:
            candidates = self.directory.glob(pattern)
        return sorted(p for p in candidates if p.is_file())

    def process_files(self, batch_size: int = 100, fail_fast: bool = False) -> List[HeaderReport]:
        """
        Process all matching files in the directory.

        Args:
            batch_size: Number of files to process before displaying progress
            fail_fast: Re-raise the first read/write error instead of recording it

        Returns:
            List[HeaderReport]: One report per file, in processing order
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")

        debug_print(f"Starting to process files in directory: {self.directory}", level='normal')
        files = self.find_files()
        debug_print(f"Found {len(files)} files matching {self.settings.file_pattern!r}", level='normal')

        reports = []
        for processed_count, path in enumerate(files, 1):
            try:
                report = apply_to_file(path, self.settings.separator, self.settings.substitutions,
                                       dry_run=self.dry_run)
            except (OSError, UnicodeDecodeError) as e:
                if fail_fast:
                    raise
                debug_print(f"Error processing file {path}: {e}", level='normal')
                report = HeaderReport(str(path), STATUS_ERROR, error=str(e))
            reports.append(report)

            # Display progress in batches
            if processed_count % batch_size == 0:
                print(f"Processed {processed_count} files so far")

        return reports


def print_settings(settings: ProcessingSettings) -> None:
    print("Configuration loaded:")
    print(f"  Target Directory: {settings.target_directory}")
    print(f"  File Pattern: {settings.file_pattern}")
    print(f"  Include Subdirectories: {settings.include_subdirectories}")
    print(f"  Column Separator: '{settings.separator}'")
    print(f"  Replacements configured: {len(settings.substitutions)}")
    if settings.substitutions:
        print("  Replacement rules:")
        for find, replace in settings.substitutions:
            print(f"    '{find}' -> '{replace}'")
    else:
        print(f"  {Fore.YELLOW}Warning: No replacement rules configured. Headers will not be modified.{Style.RESET_ALL}")
    print()


def print_reports(reports: List[HeaderReport], separator: str) -> None:
    """Print one block per file, changed fields in cyan."""
    for report in reports:
        if report.status == STATUS_UPDATED:
            print(f"{report.path}")
            print(f"  Original: {report.original}")
            print(f"  Cleaned:  {colorize_header(report.original, report.cleaned, separator)}")
        elif report.status == STATUS_ERROR:
            print(f"{Fore.RED}Error processing file {report.path}: {report.error}{Style.RESET_ALL}")
        elif report.status == STATUS_EMPTY:
            debug_print(f"File is empty: {report.path}", level='normal')
        else:
            debug_print(f"No changes needed for: {report.path}", level='normal')


def positive_int(value: str) -> int:
    """argparse type for counts that must be 1 or more."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def main(argv: Optional[List[str]] = None) -> int:
    """Clean the header lines of delimited text files."""
    parser = argparse.ArgumentParser(
        description='Clean the header line of delimited text files with literal find/replace rules',
        add_help=True,  # This adds -h/--help by default
    )
    parser.add_argument('directory', nargs='?', default=None,
                        help='Directory containing files to process (default: TargetDirectory from settings)')
    parser.add_argument('--settings', dest='settings_path',
                        help=f'Path to settings file (default: search for {SETTINGS_FILENAME})')
    parser.add_argument('--separator',
                        help='Column separator, overrides ColumnSeparator')
    parser.add_argument('--pattern', dest='file_pattern',
                        help='File name pattern, overrides FilePattern (e.g. "*.txt")')
    parser.add_argument('--no-recursive', action='store_true',
                        help='Do not descend into subdirectories')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show which headers would change without writing')
    parser.add_argument('--yes', '-y', action='store_true',
                        help='Apply changes without asking for confirmation')
    parser.add_argument('--fail-fast', action='store_true',
                        help='Stop at the first file that cannot be read or written')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug output')
    parser.add_argument('--batch-size', type=positive_int, default=100,
                        help='Display progress after processing this many files (default: 100)')

    # Add a custom -? help option
    parser.add_argument('-?', action='help',
                        help='Show this help message and exit')

    args = parser.parse_args(argv)

    if args.debug:
        os.environ['HEADER_CLEANER_DEBUG'] = 'detail'  # Enable detailed debug output

    print("Header Cleaner - Starting...")

    try:
        settings = load_settings(args.settings_path)
        overrides = {}
        if args.directory:
            overrides['target_directory'] = args.directory
        if args.separator is not None:
            if not args.separator:
                raise ConfigurationError("--separator cannot be empty")
            overrides['separator'] = args.separator
        if args.file_pattern:
            overrides['file_pattern'] = args.file_pattern
        if args.no_recursive:
            overrides['include_subdirectories'] = False
        settings = settings._replace(**overrides)

        cleaner = HeaderCleaner(settings=settings, dry_run=True)
    except ConfigurationError as e:
        print(f"{Fore.RED}Error: {e}{Style.RESET_ALL}")
        return 1

    directory_path = cleaner.directory.resolve()
    if not directory_path.exists():
        print(f"Error: Directory '{directory_path}' does not exist.")
        print("Please provide a valid directory path.")
        return 1
    elif not directory_path.is_dir():
        print(f"Error: '{directory_path}' is not a directory.")
        print("Please provide a valid directory path.")
        return 1

    print_settings(settings)

    # First pass never writes, so the user can review the changes
    try:
        reports = cleaner.process_files(batch_size=args.batch_size, fail_fast=args.fail_fast)
    except (OSError, UnicodeDecodeError) as e:
        print(f"{Fore.RED}Error: {e}{Style.RESET_ALL}")
        print("Stopped at the first failing file, no headers were changed.")
        return 1
    pending = [r for r in reports if r.status == STATUS_UPDATED]
    errors = [r for r in reports if r.status == STATUS_ERROR]

    if args.dry_run:
        print("\nProposed changes (dry run):\n")
    else:
        print("\nHeaders to update: (showing changed columns in cyan)\n")
    print_reports(reports, settings.separator)

    if not pending:
        print("\nNo headers need to be changed.")
        return 1 if errors else 0

    if args.dry_run:
        print(f"\n{len(pending)} of {len(reports)} files would be updated.")
        return 1 if errors else 0

    if not args.yes:
        confirm = input("\nApply these changes? [y/N] ")
        if confirm.lower() != 'y':
            print("No changes made.")
            return 1 if errors else 0

    print(f"Updating headers in folder: {cleaner.directory}")
    updated = 0
    for report in pending:
        try:
            result = apply_to_file(report.path, settings.separator, settings.substitutions)
        except (OSError, UnicodeDecodeError) as e:
            print(f"{Fore.RED}Error processing file {report.path}: {e}{Style.RESET_ALL}")
            errors.append(HeaderReport(report.path, STATUS_ERROR, error=str(e)))
            if args.fail_fast:
                print(f"Stopped after {updated} updated files.")
                return 1
            continue
        if result.written:
            updated += 1
            print(f"Header updated in: {result.path}")

    print(f"\nProcessing completed: {updated} updated, {len(errors)} failed, {len(reports)} files checked.")
    return 1 if errors else 0


# Define a custom exception handler that will only be installed when this file is run directly (not when run with pytest)
def global_exception_handler(exc_type, exc_value, exc_traceback):
    # Get the most recent frame from the traceback for location information
    tb_frame = traceback.extract_tb(exc_traceback)[-1] if exc_traceback else None
    file_info = f" in {tb_frame.filename}:{tb_frame.lineno} (function: {tb_frame.name})" if tb_frame else ""

    sys.stderr.write("\n==== GLOBAL EXCEPTION HANDLER ====\n")
    sys.stderr.write(f"Unhandled exception: {exc_type.__name__}: {exc_value}{file_info}\n")
    sys.stderr.write("\nDetailed traceback:\n")
    sys.stderr.write(''.join(traceback.format_exception(exc_type, exc_value, exc_traceback)))
    sys.stderr.write("\nPlease report this error with the above information.\n")
    sys.stderr.write("==== END EXCEPTION HANDLER ====\n")
    sys.stderr.flush()


if __name__ == '__main__':
    # Only install the exception handler when running this file directly
    # This prevents it from interfering with pytest's exception handling
    sys.excepthook = global_exception_handler
    sys.exit(main())
