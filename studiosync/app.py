# studiosync/app.py
"""
Interactive console for the studiosync runtime.

Loads configuration, opens the local store, starts connectivity polling and
the background sync loop, then hands input lines to the slash command router.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
try:
    import readline
except ImportError:  # pragma: no cover
    readline = None
from shutil import get_terminal_size
from typing import Optional

from .commands import COMMANDS
from .configuration import (
    REPO_ROOT,
    ConfigurationBundle,
    Diagnostic,
    load_runtime_configuration,
    resolve_home_dir,
)
from .context import StudioContext, build_context
from .errors import ConfigurationError
from .logging_utils import setup_logging, shutdown_logging
from .slash_commands import CommandRouter

logger = logging.getLogger("studiosync")
EXIT_WORDS = {"quit", "exit"}


def _log_path_within_home(log_path: Path, home_dir: Path) -> bool:
    try:
        log_path.relative_to(home_dir)
        return True
    except ValueError:
        return False


def print_banner(config: ConfigurationBundle) -> None:
    """Print the runtime header so operators know which home is in use."""

    name = str(config.section("runtime").get("name") or "StudioSync")
    width = min(78, max(40, get_terminal_size(fallback=(80, 24)).columns - 2))
    rule = "=" * width
    print(rule)
    print(f"{name.upper()} :: offline-first studio sync".center(width))
    print(f"home: {config.home_dir}".center(width))
    print(rule)
    print()


def prepare_home(home_dir: Path) -> ConfigurationBundle:
    """Load configuration, creating the home directory on first run."""

    config = load_runtime_configuration(home_dir)
    if config.status == "missing":
        try:
            (home_dir / "config").mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            config.diagnostics.append(
                Diagnostic(level="error", message=f"Unable to create home: {exc}", source=home_dir)
            )
            return config
        config = load_runtime_configuration(home_dir)
    return config


def build_router(config: ConfigurationBundle, studio: Optional[StudioContext] = None) -> CommandRouter:
    """Register every slash command with the router."""

    router = CommandRouter(
        config,
        studio=studio,
        metadata={"repo_root": str(REPO_ROOT)},
    )
    for command in COMMANDS:
        router.register(command)
    return router


def emit_configuration_report(config: ConfigurationBundle) -> None:
    """Print diagnostics so operators can correct issues quickly."""

    if not config.diagnostics:
        print(
            f"[config] Loaded {len(config.files_loaded)} file(s) "
            f"from repo and home config directories."
        )
        return

    print("[config] Diagnostics:")
    for diag in config.diagnostics:
        prefix = diag.source or config.home_dir
        print(f"  - ({diag.level.upper()}) {diag.message} [{prefix}]")


def configure_autocomplete(router: CommandRouter) -> None:
    """Enable readline tab completion for slash commands."""

    if readline is None:
        return

    commands = list(router.command_names)

    def completer(text: str, state: int):
        buffer = readline.get_line_buffer()
        if not buffer.startswith("/"):
            return None
        fragment = text[1:] if text.startswith("/") else text
        matches = [f"/{cmd}" for cmd in commands if cmd.startswith(fragment)]
        if state < len(matches):
            return matches[state]
        return None

    readline.set_completer(completer)
    readline.parse_and_bind("tab: complete")
    readline.set_completer_delims(" \t")


def _init_logging(config: ConfigurationBundle) -> None:
    logging_cfg = config.section("logging")
    env_level = os.environ.get("STUDIOSYNC_LOG_LEVEL")
    level_name = (env_level or logging_cfg.get("level") or "WARNING").upper()
    log_path = setup_logging(
        config.home_dir,
        level_name,
        structured=bool(logging_cfg.get("structured", False)),
        console=False,
    )
    config.log_path = log_path
    if not _log_path_within_home(log_path, config.home_dir):
        config.diagnostics.append(
            Diagnostic(
                level="warning",
                message=(
                    "Home log directory is not writable; "
                    f"logging to fallback path '{log_path}'."
                ),
                source=log_path,
            )
        )
    logger.info("Logging initialized at %s", log_path)


def main() -> None:
    """Entry point for the ``studiosync`` console script."""

    config = prepare_home(resolve_home_dir())
    _init_logging(config)
    print_banner(config)
    emit_configuration_report(config)

    studio: Optional[StudioContext] = None
    try:
        studio = build_context(config)
    except ConfigurationError as exc:
        logger.error("Startup failed: %s", exc)
        print(f"[studiosync] {exc}")
        print("[studiosync] Running without a store; only /status and /help are available.")
    else:
        studio.start()

    router = build_router(config, studio)
    configure_autocomplete(router)

    try:
        while True:
            try:
                raw_line = input("> ")
            except (EOFError, KeyboardInterrupt):
                print("\n[Exiting studiosync]")
                break

            line = raw_line.strip()
            if not line:
                continue
            if line.lower().lstrip("/") in EXIT_WORDS:
                print("[Goodbye]")
                break

            output = router.dispatch(line)
            if output:
                print(output)
            logger.info("Executed command: %s", line)
    finally:
        if studio is not None:
            studio.close()
        shutdown_logging()


if __name__ == "__main__":  # pragma: no cover
    main()
