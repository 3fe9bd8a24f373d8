#!/usr/bin/env python3
"""rsync-backup.py: Full, differential and incremental backups to an external disk using rsync."""
from __future__ import annotations

import argparse
import asyncio
import os
import shlex
import signal
import sys
from datetime import datetime
from functools import partial
from typing import TYPE_CHECKING, Callable, NamedTuple, NoReturn

if TYPE_CHECKING:
    from types import FrameType

APPNAME = "rsync-backup.py"
VERBOSE = False

FULL = "Full"
DIFFERENTIAL = "Differential"
INCREMENTAL = "Incremental"
MODES = (FULL, DIFFERENTIAL, INCREMENTAL)

SOURCES = ("home", "private")
DEFAULT_MOUNT_POINT = "/mnt"
LATEST_FULL_BACKUP = "latest-full-backup"

# rsync refuses more than 20 --compare-dest directories
MAX_COMPARE_DEST = 20
# "Partial transfer due to vanished source files"
RSYNC_VANISHED = 24


class BackupError(Exception):
    """A fatal error, reported to the operator before exiting with status 1."""


class UsageError(BackupError):
    """Bad or missing command-line arguments."""


class MountError(BackupError):
    """The backup volume is not mounted."""


class PathError(BackupError):
    """The destination base folder does not exist."""


class PrerequisiteError(BackupError):
    """A relative backup was requested, but there is no full backup to refer to."""


class SyncError(BackupError):
    """rsync could not be run or exited with an error."""

    def __init__(self, message: str, result: CmdResult) -> None:
        super().__init__(message)
        self.result = result


COLORS = {
    "green": "\033[92m",
    "magenta": "\033[95m",
    "yellow": "\033[93m",
    "red": "\033[91m",
    "orange": "\033[33m",
}


def style(text: str, color: str | None = None, *, bold: bool = False) -> str:
    """Return styled text."""
    color_code = COLORS.get(color, "")  # type: ignore[arg-type]
    bold_code = "\033[1m" if bold else ""
    reset_code = "\033[0m"
    return f"{bold_code}{color_code}{text}{reset_code}"


def sanitize(s: str) -> str:
    """Return a version of the string that can always be printed."""
    # File names that are not valid UTF-8 arrive surrogate-escaped
    return s.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def log(message: str, level: str = "info") -> None:
    """Log a message with the specified log level."""
    levels = {"info": "", "warning": "[WARNING] ", "error": "[ERROR] "}
    output = sys.stderr if level in {"warning", "error"} else sys.stdout
    message = sanitize(message)
    print(f"{style(APPNAME, bold=True)}: {levels[level]}{message}", file=output)


def log_info(message: str) -> None:
    """Log an info message to stdout."""
    log(message, "info")


def log_warn(message: str) -> None:
    """Log a warning message to stderr."""
    log(style(message, "orange"), "warning")


def log_error(message: str) -> None:
    """Log an error message to stderr."""
    log(style(message, "red", bold=True), "error")


def terminate_script(
    _signal_number: int,
    _frame: FrameType | None,
) -> None:
    """Terminate the script when CTRL+C is pressed."""
    log_info("SIGINT caught.")
    sys.exit(1)


class SourceProfile(NamedTuple):
    """Everything that depends on the chosen backup source."""

    name: str
    source: str
    dest_base_dir: str
    exclude_file: str
    template: str
    mount_point: str

    @property
    def latest_link(self) -> str:
        """Path of the symlink that points to the latest full backup."""
        return os.path.join(self.dest_base_dir, LATEST_FULL_BACKUP)


class Variant(NamedTuple):
    """Behaviour switches of the supported backup strategies.

    ``strict`` makes a missing destination base folder and a missing full
    backup fatal. ``rolling`` merges a differential run into the chosen full
    backup instead of writing a side-by-side record next to it.
    """

    name: str
    menu: dict[str, str]
    strict: bool
    rolling: bool


VARIANTS = {
    "rolling": Variant(
        "rolling",
        {"f": FULL, "d": DIFFERENTIAL},
        strict=True,
        rolling=True,
    ),
    "chain": Variant(
        "chain",
        {"f": FULL, "d": DIFFERENTIAL, "i": INCREMENTAL},
        strict=False,
        rolling=False,
    ),
}


def resolve_profile(
    name: str,
    *,
    home: str | None = None,
    mount_point: str = DEFAULT_MOUNT_POINT,
) -> SourceProfile:
    """Return the `SourceProfile` of the ``home`` or ``private`` source.

    ``home`` backs up the whole home folder, ``private`` only its
    ``dwhelper`` subfolder. Both keep their backups in their own folder on the
    backup volume and read rsync exclude rules from ``~/bin``.
    """
    if home is None:
        home = os.path.expanduser("~")
    home = home.rstrip("/")
    dest_base_dir = os.path.join(mount_point, "Backups", "rsyncv2", name)
    exclude_file = os.path.join(home, "bin", f"rsync.exclude.{name}")
    if name == "home":
        source, template = f"{home}/", "Trusty_Vaughan"
    elif name == "private":
        source, template = f"{home}/dwhelper/", "dwhelper_Trusty_Vaughan"
    else:
        msg = f"Unknown parameter: {name}"
        raise UsageError(msg)
    return SourceProfile(
        name,
        source,
        dest_base_dir,
        exclude_file,
        template,
        mount_point,
    )


class ArgumentParser(argparse.ArgumentParser):
    """`argparse.ArgumentParser` that raises `UsageError` instead of exiting."""

    def error(self, message: str) -> NoReturn:
        """Print the usage and raise a `UsageError`."""
        self.print_usage(sys.stderr)
        raise UsageError(message)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments and resolve the backup source.

    Unknown options are ignored with a warning. The returned namespace carries
    the resolved `SourceProfile` as ``profile`` and the `Variant` as
    ``variant``.
    """
    parser = ArgumentParser(
        description="Backup either the home or the private folder to an external disk."
        " A backup can be full, differential or incremental.",
        add_help=False,
    )
    parser.add_argument(
        "-h",
        "-?",
        "--help",
        action="help",
        help="Show this help message and exit.",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Print as if files were backed up, but do not change anything.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output, showing every helper command that is run.",
    )
    parser.add_argument(
        "--variant",
        choices=sorted(VARIANTS),
        default="rolling",
        help="Backup strategy. 'rolling' (default) merges differential runs into the chosen"
        " full backup and keeps overwritten files in a side folder; 'chain' writes"
        " differential and incremental backups next to the full backup using --compare-dest.",
    )
    parser.add_argument(
        "--mount-point",
        default=os.environ.get("RSYNC_BACKUP_MOUNT_POINT", DEFAULT_MOUNT_POINT),
        help="Mount point of the backup disk. Default: $RSYNC_BACKUP_MOUNT_POINT or /mnt",
    )
    parser.add_argument(
        "--rsync-append-flags",
        default="",
        help="Append flags to the rsync command.",
    )
    parser.add_argument(
        "source",
        nargs="*",
        metavar="{home,private}",
        help="'home' backs up the home folder, 'private' backs up only the private one.",
    )
    args, unknown = parser.parse_known_intermixed_args(argv)

    for arg in unknown:
        if arg.startswith("-"):
            log_warn(f"Unknown option (ignored): {arg}")
        else:
            parser.error(f"Unknown parameter: {arg}")

    for source in args.source:
        if source not in SOURCES:
            parser.error(f"Unknown parameter: {source}")
    if len(args.source) > 1:
        parser.error("can't backup home and private at same time.")
    if not args.source:
        parser.error("missing backup source.")

    args.profile = resolve_profile(args.source[0], mount_point=args.mount_point)
    args.variant = VARIANTS[args.variant]
    return args


def log_cmd_output(line: str, color: str) -> None:
    """Log a line of command output in verbose mode."""
    log_info(f"Command output: {style(line, color, bold=True)}")


class CmdResult(NamedTuple):
    """Command result."""

    stdout: str
    stderr: str
    returncode: int


async def async_run_cmd(
    cmd: str | list[str],
    *,
    stream: bool = False,
) -> CmdResult:
    """Run a command, through the shell when it is given as a string.

    With ``stream`` every output line is shown to the operator as it arrives.
    """
    cmd_str = cmd if isinstance(cmd, str) else shlex.join(cmd)
    if VERBOSE:
        log_info(f"Running command: {style(cmd_str, 'green', bold=True)}")

    if isinstance(cmd, str):
        process = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    else:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    # Should not be None because of asyncio.subprocess.PIPE
    assert process.stdout is not None, "Process stdout is None"
    assert process.stderr is not None, "Process stderr is None"

    on_stdout: Callable[[str], None] | None = None
    on_stderr: Callable[[str], None] | None = None
    if stream:
        on_stdout, on_stderr = log_info, log_warn
    elif VERBOSE:
        on_stdout = partial(log_cmd_output, color="magenta")
        on_stderr = partial(log_cmd_output, color="red")

    stdout, stderr = await asyncio.gather(
        read_stream(process.stdout, on_stdout),
        read_stream(process.stderr, on_stderr),
    )

    await process.wait()
    assert process.returncode is not None, "Process has not returned"

    if VERBOSE and process.returncode != 0:
        msg = style(str(process.returncode), "red", bold=True)
        log_error(f"Command exit code: {msg}")
    return CmdResult(stdout, stderr, process.returncode)


async def read_stream(
    stream: asyncio.StreamReader,
    callback: Callable[[str], None] | None,
) -> str:
    """Read each line from the stream and pass it to the callback, if any."""
    output = []
    while True:
        line = await stream.readline()
        if not line:
            break
        line_str = line.decode("utf-8", "replace").rstrip()
        output.append(line_str)
        if callback is not None:
            callback(line_str)
    return "\n".join(output)


def run_cmd(cmd: str | list[str], *, stream: bool = False) -> CmdResult:
    """Synchronously run a command."""
    return asyncio.run(async_run_cmd(cmd, stream=stream))


def now_str() -> str:
    """Return current date and time as string in format YYYY-MM-DD-HHMMSS."""
    return datetime.now().strftime("%Y-%m-%d-%H%M%S")


class BackupRecord(NamedTuple):
    """A backup folder named ``{timestamp}_{template}_{mode}``."""

    path: str
    timestamp: str
    template: str
    mode: str

    @property
    def name(self) -> str:
        """Folder name of the record."""
        return os.path.basename(self.path)

    def with_mode(self, mode: str) -> str:
        """Return the path of the sibling record that differs only in its mode."""
        stem = self.name[: -len(self.mode)]
        return os.path.join(os.path.dirname(self.path), f"{stem}{mode}")


def backup_name(timestamp: str, template: str, mode: str) -> str:
    """Return the folder name of a backup record."""
    return f"{timestamp}_{template}_{mode}"


def parse_backup_record(path: str, template: str | None = None) -> BackupRecord | None:
    """Parse a backup folder path, return None if its name has no mode suffix.

    When ``template`` is given, everything before ``_{template}_`` is the
    timestamp, so timestamps that contain underscores themselves are kept
    intact. Otherwise the name is split at the first underscore.
    """
    path = path.rstrip("/")
    name = os.path.basename(path)
    mode = next((m for m in MODES if name.endswith(m)), None)
    if mode is None:
        return None
    stem = name[: -len(mode)].rstrip("_")
    if template and stem.endswith(f"_{template}"):
        return BackupRecord(path, stem[: -len(template) - 1], template, mode)
    timestamp, _, rest = stem.partition("_")
    return BackupRecord(path, timestamp, rest, mode)


def find_backups(
    dest_base_dir: str,
    modes: tuple[str, ...],
    template: str | None = None,
) -> list[BackupRecord]:
    """Return the backups directly in `dest_base_dir` whose name ends in one of `modes`.

    Sorted by folder name, which starts with the timestamp.
    """
    names = " -o ".join(f"-name {shlex.quote('*' + mode)}" for mode in modes)
    cmd = (
        f"find -H {shlex.quote(dest_base_dir)} -mindepth 1 -maxdepth 1"
        f" -type d \\( {names} \\)"
    )
    records = [
        parse_backup_record(path, template)
        for path in run_cmd(cmd).stdout.splitlines()
    ]
    return sorted((r for r in records if r is not None), key=lambda r: r.name)


def is_mount_point(path: str) -> bool:
    """Return whether `path` is currently a mount point."""
    return os.path.ismount(path)


def resolve_symlink(link: str) -> str | None:
    """Return the real path `link` points to, or None if absent or broken."""
    if not os.path.islink(link):
        return None
    target = os.path.realpath(link)
    return target if os.path.exists(target) else None


def replace_symlink(target: str, link: str) -> None:
    """Atomically point `link` at `target`, creating the link if needed."""
    target = target.rstrip("/")
    relative_target = os.path.relpath(target, os.path.dirname(link))
    tmp_link = f"{link}.{os.getpid()}.tmp"
    if os.path.lexists(tmp_link):
        os.remove(tmp_link)
    os.symlink(relative_target, tmp_link)
    os.replace(tmp_link, link)


def prune_empty_dirs(path: str, *, keep_root: bool = False) -> None:
    """Remove empty folders in `path` bottom-up, `path` itself too unless `keep_root`."""
    mindepth = " -mindepth 1" if keep_root else ""
    run_cmd(f"find {shlex.quote(path)}{mindepth} -depth -type d -empty -delete")


def check_preconditions(profile: SourceProfile, variant: Variant) -> None:
    """Check that the backup disk is mounted and, if strict, the base folder exists."""
    if not is_mount_point(profile.mount_point):
        msg = f"Backup drive not mounted at '{profile.mount_point}'. Stopping."
        raise MountError(msg)
    if variant.strict and not os.path.isdir(profile.dest_base_dir):
        msg = f"{profile.dest_base_dir} does not exist."
        raise PathError(msg)


def ask_backup_mode(
    variant: Variant,
    input_fn: Callable[[str], str] = input,
) -> str:
    """Ask for the backup mode until one of the menu keys is typed."""
    names = [mode.lower() for mode in variant.menu.values()]
    question = (
        f"{', '.join(names[:-1]).capitalize()}, or {names[-1]}"
        f" ({'/'.join(variant.menu)})? "
    )
    while True:
        answer = input_fn(question).strip()
        if answer in variant.menu:
            return variant.menu[answer]


def get_exclude_option(exclude_file: str) -> list[str]:
    """Return the rsync exclude option, or nothing if the rules file is missing."""
    if os.path.isfile(exclude_file):
        log_info(f"Using exclude rules from: {style(exclude_file, bold=True)}")
        return [f"--exclude-from={exclude_file}"]
    log_warn(f"Exclude file '{exclude_file}' does not exist.")
    log_warn("Not using exclude rules.")
    return []


def select_full_backup(
    full_backups: list[BackupRecord],
    latest: str | None,
    input_fn: Callable[[str], str] = input,
) -> BackupRecord:
    """Let the operator pick the full backup to use as reference.

    The backup `latest` points to is labelled, but not selected by default.
    """
    latest_name = os.path.basename(latest) if latest else None
    while True:
        log_info("Full backups available:")
        for index, record in enumerate(full_backups):
            label = f" {style('(latest)', 'green')}" if record.name == latest_name else ""
            log_info(f"\t{index}) {record.name}{label}")
        option = input_fn("Select full backup directory? ").strip()
        if option.isdecimal() and int(option) < len(full_backups):
            return full_backups[int(option)]


class BackupPlan(NamedTuple):
    """The rsync destination and references, and what to do after the transfer."""

    mode: str
    destination: str
    references: tuple[str, ...] = ()
    backup_dir: str | None = None
    prune_dir: str | None = None
    prune_keep_root: bool = True
    rename_to: str | None = None
    link_target: str | None = None


def plan_rolling_differential(
    profile: SourceProfile,
    chosen: BackupRecord,
    now: str,
) -> BackupPlan:
    """Merge changes into `chosen`, keeping overwritten files in a ``Differential`` sibling.

    Afterwards the merged folder becomes the newest full backup.
    """
    backup_dir = chosen.with_mode(DIFFERENTIAL)
    rename_to = os.path.join(
        profile.dest_base_dir,
        backup_name(now, profile.template, FULL),
    )
    if os.path.lexists(rename_to):
        msg = f"{rename_to} already exists - not merging into it."
        raise PathError(msg)
    return BackupPlan(
        DIFFERENTIAL,
        f"{chosen.path}/",
        backup_dir=backup_dir,
        prune_dir=backup_dir,
        prune_keep_root=False,
        rename_to=rename_to,
        link_target=rename_to,
    )


def plan_backup(
    profile: SourceProfile,
    mode: str,
    variant: Variant,
    now: str,
    input_fn: Callable[[str], str] = input,
) -> BackupPlan:
    """Work out the destination and the reference chain for a backup in `mode`."""
    if mode == FULL:
        destination = os.path.join(
            profile.dest_base_dir,
            backup_name(now, profile.template, FULL),
        )
        return BackupPlan(FULL, f"{destination}/", link_target=destination)

    rolling = variant.rolling and mode == DIFFERENTIAL
    full_backups = find_backups(profile.dest_base_dir, (FULL,), profile.template)
    chosen = None
    if full_backups:
        chosen = select_full_backup(
            full_backups,
            resolve_symlink(profile.latest_link),
            input_fn,
        )
    elif variant.strict or rolling:
        msg = f"Unable to do a {mode.lower()} backup. No full backups found."
        raise PrerequisiteError(msg)
    else:
        log_warn("No full backups found - continuing without a reference.")

    if rolling:
        assert chosen is not None
        return plan_rolling_differential(profile, chosen, now)

    references = [chosen.path] if chosen else []
    if mode == INCREMENTAL:
        references += [
            record.path
            for record in find_backups(
                profile.dest_base_dir,
                (DIFFERENTIAL, INCREMENTAL),
                profile.template,
            )
        ]
    if len(references) > MAX_COMPARE_DEST:
        log_warn(
            f"{len(references)} reference backups found, but rsync accepts at most"
            f" {MAX_COMPARE_DEST}. Consider starting a new full backup.",
        )
    destination = os.path.join(
        profile.dest_base_dir,
        backup_name(now, profile.template, mode),
    )
    return BackupPlan(
        mode,
        f"{destination}/",
        tuple(references),
        prune_dir=destination,
    )


def has_dry_run_flag(flags: list[str]) -> bool:
    """Return whether `flags` ask rsync for a dry run, also inside short-flag clusters like ``-vn``."""
    for flag in flags:
        if flag == "--dry-run":
            return True
        if flag.startswith("-") and not flag.startswith("--") and "n" in flag[1:]:
            return True
    return False


def rsync_command(
    plan: BackupPlan,
    source: str,
    *,
    exclude_option: list[str],
    dry_run: bool,
    rsync_append_flags: str = "",
) -> list[str]:
    """Return the rsync command that carries out `plan`."""
    extra_flags = shlex.split(rsync_append_flags)
    cmd = ["rsync", "-av"]
    if dry_run and not has_dry_run_flag(extra_flags):
        cmd.append("--dry-run")
    cmd += extra_flags
    cmd += exclude_option
    if plan.backup_dir:
        cmd += ["--backup", f"--backup-dir={plan.backup_dir}"]
    cmd += [f"--compare-dest={ref.rstrip('/')}/" for ref in plan.references]
    cmd += [source, plan.destination]
    return cmd


def confirm(cmd: list[str], input_fn: Callable[[str], str] = input) -> None:
    """Show the command and wait for the operator to acknowledge it."""
    log_info(style("Command to be executed:", bold=True))
    log_info(style(shlex.join(cmd), "green"))
    input_fn("Press Enter to start backup.")


def run_rsync(cmd: list[str]) -> CmdResult:
    """Run rsync, streaming its output, and raise `SyncError` if it failed."""
    try:
        result = run_cmd(cmd, stream=True)
    except FileNotFoundError as e:
        msg = f"Could not run '{cmd[0]}': {e.strerror}."
        raise SyncError(msg, CmdResult("", str(e), 127)) from e
    if result.returncode == RSYNC_VANISHED:
        log_warn("Some files vanished before they could be transferred.")
    elif result.returncode != 0:
        msg = f"rsync failed with exit code {result.returncode} - skipping post-processing."
        raise SyncError(msg, result)
    return result


def finalize(plan: BackupPlan, profile: SourceProfile) -> None:
    """Prune, rename and relink after a successful transfer."""
    if plan.prune_dir and os.path.isdir(plan.prune_dir):
        log_info(f"Pruning empty folders in {style(plan.prune_dir, bold=True)}")
        prune_empty_dirs(plan.prune_dir, keep_root=plan.prune_keep_root)

    if plan.rename_to:
        log_info(
            f"Renaming {style(plan.destination, bold=True)}"
            f" to {style(plan.rename_to, bold=True)}",
        )
        os.rename(plan.destination.rstrip("/"), plan.rename_to)

    if plan.link_target:
        replace_symlink(plan.link_target, profile.latest_link)
        log_info(f"{LATEST_FULL_BACKUP} now points to {style(plan.link_target, bold=True)}")


def backup(
    profile: SourceProfile,
    *,
    variant: Variant = VARIANTS["rolling"],
    dry_run: bool = False,
    rsync_append_flags: str = "",
    input_fn: Callable[[str], str] = input,
) -> BackupPlan:
    """Interactively back up the source of `profile` and return the executed plan."""
    check_preconditions(profile, variant)
    log_info(f"Backing up: {style(profile.source, bold=True)} ({variant.name} strategy)")

    mode = ask_backup_mode(variant, input_fn)
    now = now_str()
    exclude_option = get_exclude_option(profile.exclude_file)
    plan = plan_backup(profile, mode, variant, now, input_fn)

    if has_dry_run_flag(shlex.split(rsync_append_flags)):
        dry_run = True
        log_info(
            f"Dry-run detected in rsync flags - setting {style('--dry-run', 'green')}.",
        )
    if dry_run:
        log_info(
            f"Dry-run mode enabled: {style('no changes will be persisted', 'orange')}.",
        )

    cmd = rsync_command(
        plan,
        profile.source,
        exclude_option=exclude_option,
        dry_run=dry_run,
        rsync_append_flags=rsync_append_flags,
    )
    confirm(cmd, input_fn)
    run_rsync(cmd)

    if dry_run:
        log_info("Dry run complete - no backup was saved.")
        return plan

    finalize(plan, profile)
    log_info(style(f"{plan.mode} backup completed.", "magenta"))
    return plan


def main(argv: list[str] | None = None) -> None:
    """Main function."""
    global VERBOSE
    signal.signal(signal.SIGINT, terminate_script)
    try:
        args = parse_arguments(argv)
        VERBOSE = args.verbose
        backup(
            args.profile,
            variant=args.variant,
            dry_run=args.dry_run,
            rsync_append_flags=args.rsync_append_flags,
        )
    except BackupError as e:
        log_error(str(e))
        sys.exit(1)
    except EOFError:
        log_error("No more input from the operator - aborting.")
        sys.exit(1)


if __name__ == "__main__":
    main()
