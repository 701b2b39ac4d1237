"""Command-line entry point: ``depfetch install`` and ``depfetch lock``."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, List, Optional, Sequence, Tuple

from depfetch.args import parse_args
from depfetch.common.logging_utils import configure_logging, extra_context, is_debug_enabled
from depfetch.constants import Constants, ExitCodes
from depfetch.context import InstallContext, Reporter
from depfetch.errors import ConfigurationError, DepfetchError
from depfetch.models import Specification
from depfetch.settings import load_settings
from depfetch.source import RegistrySource

logger = logging.getLogger(__name__)


def tokenize_rightmost_colon(s: str) -> Tuple[str, Optional[str]]:
    """Return (name, version or None) using the rightmost-colon rule."""
    s = s.strip()
    if ':' not in s:
        return s, None
    name, version = s.rsplit(':', 1)
    return name.strip(), (version.strip() or None)


def parse_request(token: str) -> Tuple[str, Optional[str]]:
    """Split a ``NAME``, ``NAME:VERSION`` or ``NAME==VERSION`` request."""
    if "==" in token:
        name, _, version = token.partition("==")
        name, version = name.strip(), (version.strip() or None)
    else:
        name, version = tokenize_rightmost_colon(token)
    if not name:
        raise ConfigurationError(f"Invalid package request: {token!r}")
    return name, version


def _setup_logging(args: Any) -> None:
    """Configure logging based on CLI arguments."""
    if getattr(args, "LOG_LEVEL", None):
        os.environ["DEPFETCH_LOG_LEVEL"] = str(args.LOG_LEVEL).upper()

    configure_logging()

    log_file = getattr(args, "LOG_FILE", None)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        )
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)
        logger.info("Logging to file: %s", log_file)


def build_context(args: Any, env=None) -> InstallContext:
    """Layer settings from the config file, environment and CLI flags."""
    install_path = getattr(args, "PATH", None)
    bin_dir = None
    if getattr(args, "SYSTEM", False):
        install_path = Constants.SYSTEM_INSTALL_PATH
        bin_dir = Constants.SYSTEM_BIN_DIR
    settings = load_settings(
        getattr(args, "CONFIG", None),
        env=env,
        install_path=install_path,
        bin_dir=bin_dir,
        sources=args.SOURCES or None,
        trust_policy=getattr(args, "TRUST_POLICY", None),
        incremental=False if args.FULL_INDEX else None,
        no_install=True if getattr(args, "NO_INSTALL", False) else None,
        ignore_messages=True if getattr(args, "IGNORE_MESSAGES", False) else None,
        jobs=args.JOBS,
    )
    return InstallContext(settings=settings, reporter=Reporter(quiet=args.QUIET))


def build_source(context: InstallContext, args: Any) -> RegistrySource:
    source = RegistrySource(context, context.settings.sources)
    if not args.LOCAL:
        source.allow_remote()
    source.allow_cached()
    return source


def select(source: RegistrySource, tokens: Sequence[str]) -> List[Specification]:
    """Look up each requested package; the highest version wins when none is given."""
    requests = [parse_request(token) for token in tokens]
    source.dependency_names.update(name for name, _ in requests)
    return [source.find(name, version) for name, version in requests]


def _warn_if_root(reporter: Reporter) -> None:
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        reporter.warn(
            "Don't run depfetch as root. Installing your packages as root will "
            "break this application for all non-root users on this machine."
        )


def _report_fetch_failures(source: RegistrySource) -> None:
    if source.fetch_failures:
        logger.warning(
            "%d registr%s could not be queried; results may be incomplete.",
            len(source.fetch_failures),
            "y" if len(source.fetch_failures) == 1 else "ies",
        )


def run_install(args: Any) -> int:
    context = build_context(args)
    reporter = context.reporter
    _warn_if_root(reporter)
    try:
        source = build_source(context, args)
        specs = select(source, args.packages)
        for spec in specs:
            source.install(spec, force=args.FORCE)
            if args.CACHE:
                source.cache(source.lookup(spec))
    finally:
        context.transport.close()

    _report_fetch_failures(source)
    if not context.settings.ignore_messages:
        for name, message in context.post_install_messages.items():
            reporter.confirm(f"Post-install message from {name}:")
            reporter.info(message)
    for line in context.ambiguities.warning_lines():
        reporter.warn(line)

    verb = "cached" if context.settings.no_install else "installed"
    reporter.confirm(
        f"{len(context.installed)} package(s) {verb}, {len(context.using)} already installed."
    )
    return ExitCodes.SUCCESS.value


def format_lock(source: RegistrySource, specs: Sequence[Specification]) -> str:
    lines = [source.to_lock().rstrip("\n")]
    for spec in sorted(specs, key=lambda s: s.key):
        version = str(spec.version)
        if spec.platform != Constants.DEFAULT_PLATFORM:
            version += f"-{spec.platform}"
        lines.append(f"    {spec.name} ({version})")
        for dependency in spec.dependencies:
            lines.append(f"      {dependency}")
    return "\n".join(lines) + "\n"


def run_lock(args: Any) -> int:
    context = build_context(args)
    try:
        source = build_source(context, args)
        specs = select(source, args.packages)
    finally:
        context.transport.close()
    _report_fetch_failures(source)
    sys.stdout.write(format_lock(source, specs))
    return ExitCodes.SUCCESS.value


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main function of the program."""
    args = parse_args(argv)
    _setup_logging(args)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )

    try:
        if args.COMMAND == "lock":
            return run_lock(args)
        return run_install(args)
    except DepfetchError as exc:
        logger.error(str(exc))
        if exc.hint:
            logger.error(exc.hint)
        return exc.exit_code.value


if __name__ == "__main__":
    sys.exit(main())
