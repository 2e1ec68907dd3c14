"""Command-line entry point: run a multi-profile load scenario against Postgres."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections import Counter
from typing import Any, Optional

import asyncpg

from pgstress.config import settings
from pgstress.connectors.postgres_pool import ConnectionManager
from pgstress.core.backoff import Backoff
from pgstress.core.cancellation import CancellationToken
from pgstress.core.errors import ConfigurationError, HarnessError, classify_sql_error
from pgstress.core.preflight import generate_preflight_warnings, make_monitor_connect
from pgstress.core.profile_registry import ProfileHandle, ProfileRegistry
from pgstress.core.scenario_controller import ScenarioController
from pgstress.core.schema import ensure_schema, truncate_working_tables
from pgstress.logging_setup import setup_logging
from pgstress.models.outcome import OutcomeKind
from pgstress.models.profile_config import WorkloadKind

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PROFILE_ERRORS = 1
EXIT_NOTHING_TO_RUN = 2
EXIT_INTERRUPTED = 130


def parse_profile_shorthand(
    value: str, *, taken: Optional[Counter[str]] = None
) -> dict[str, Any]:
    """
    Parse `kind[:concurrency]` into a profile document.

    Repeated kinds get numbered names (`crud`, `crud-2`, ...).

    Raises:
        ConfigurationError: Unknown kind or non-integer concurrency
    """
    kind_text, _, concurrency_text = str(value).strip().partition(":")
    try:
        kind = WorkloadKind(kind_text.strip().lower())
    except ValueError:
        choices = ", ".join(k.value for k in WorkloadKind)
        raise ConfigurationError(
            f"unknown profile kind '{kind_text}' (expected one of: {choices})"
        ) from None

    doc: dict[str, Any] = {"name": kind.value, "kind": kind.value}
    if concurrency_text:
        try:
            doc["concurrency"] = int(concurrency_text)
        except ValueError:
            raise ConfigurationError(
                f"concurrency in '{value}' must be an integer"
            ) from None

    if taken is not None:
        taken[kind.value] += 1
        if taken[kind.value] > 1:
            doc["name"] = f"{kind.value}-{taken[kind.value]}"
    return doc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgstress",
        description="Drive a Postgres database with concurrent synthetic workload profiles.",
    )
    parser.add_argument(
        "--profiles-file",
        help="JSON file with a list of profiles (or an object with a 'profiles' list).",
    )
    parser.add_argument(
        "--profile",
        action="append",
        default=[],
        metavar="KIND[:CONCURRENCY]",
        help="Add a profile with default intensity, e.g. crud:4. Repeatable.",
    )
    parser.add_argument(
        "--only",
        action="append",
        default=[],
        metavar="NAME",
        help="Activate only the named profile(s). Repeatable.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Seconds to run before shutting down (default: until SIGINT/SIGTERM).",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=None,
        help="Seconds workers get to stop before they are cancelled.",
    )
    parser.add_argument(
        "--max-connections", type=int, default=None, help="Global connection ceiling."
    )
    parser.add_argument(
        "--reserved-headroom",
        type=int,
        default=None,
        help="Connections inside the ceiling that stress profiles may not use.",
    )
    parser.add_argument(
        "--stats-interval",
        type=float,
        default=None,
        help="Seconds between progress summaries (0 disables).",
    )
    parser.add_argument(
        "--skip-schema",
        action="store_true",
        help="Do not create the working tables.",
    )
    parser.add_argument(
        "--skip-preflight",
        action="store_true",
        help="Do not run pre-flight checks.",
    )
    parser.add_argument(
        "--truncate",
        action="store_true",
        help="Remove rows left by earlier runs before starting (keeps the sentinel row).",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    return parser


def build_registry(
    args: argparse.Namespace,
    manager: ConnectionManager,
    *,
    statement_timeout: Optional[float] = None,
) -> tuple[ProfileRegistry, list[ProfileHandle], list[str]]:
    registry = ProfileRegistry(
        stress_capacity=manager.stress_capacity,
        max_connections=manager.max_connections,
        statement_timeout_seconds=(
            settings.STATEMENT_TIMEOUT_SECONDS
            if statement_timeout is None
            else statement_timeout
        ),
    )
    handles: list[ProfileHandle] = []
    errors: list[str] = []

    if args.profiles_file:
        try:
            loaded, load_errors = registry.load_file(args.profiles_file)
        except ConfigurationError as e:
            logger.error(str(e))
            errors.append(str(e))
        else:
            handles.extend(loaded)
            errors.extend(load_errors)

    taken: Counter[str] = Counter(h.name for h in handles)
    docs: list[dict[str, Any]] = []
    for shorthand in args.profile:
        try:
            docs.append(parse_profile_shorthand(shorthand, taken=taken))
        except ConfigurationError as e:
            logger.error(str(e))
            errors.append(str(e))
    shorthand_handles, shorthand_errors = registry.register_many(docs)
    handles.extend(shorthand_handles)
    errors.extend(shorthand_errors)

    if args.only:
        wanted = set(args.only)
        missing = wanted - {h.name for h in handles}
        for name in sorted(missing):
            errors.append(f"--only: unknown profile '{name}'")
            logger.error(f"--only: unknown profile '{name}'")
        handles = [h for h in handles if h.name in wanted]
    return registry, handles, errors


async def bootstrap_schema(
    manager: ConnectionManager, token: CancellationToken, backoff: Backoff
) -> bool:
    """Create the working schema, retrying infrastructure failures until shutdown.

    Returns:
        False if shutdown was requested before the schema was ready
    """
    while not token.cancelled:
        try:
            await ensure_schema(manager)
            return True
        except Exception as e:
            kind, category = classify_sql_error(e)
            if kind != OutcomeKind.INFRASTRUCTURE_ERROR or category == "AUTH_FAILED":
                raise
            delay = backoff.next_delay()
            logger.warning(f"Schema bootstrap failed ({category}): {e}; retrying in {delay:.1f}s")
            if await token.sleep(delay):
                break
    return False


def _install_signal_handlers(token: CancellationToken) -> asyncio.Event:
    """Cancel `token` on SIGINT/SIGTERM.

    Returns:
        Event set once a signal arrived; a timed shutdown cancels the
        token too, but leaves this unset
    """
    loop = asyncio.get_running_loop()
    interrupted = asyncio.Event()

    def _on_signal(signame: str) -> None:
        if not token.cancelled:
            logger.info(f"Received {signame}; shutting down")
        interrupted.set()
        token.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform/loop; KeyboardInterrupt still works.
            pass
    return interrupted


def exit_code(*, interrupted: bool, errors: list[str], failures: dict[str, Any]) -> int:
    if interrupted:
        return EXIT_INTERRUPTED
    return EXIT_PROFILE_ERRORS if (errors or failures) else EXIT_OK


async def _run(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if args.max_connections is not None:
        overrides["max_connections"] = args.max_connections
    if args.reserved_headroom is not None:
        overrides["reserved_headroom"] = args.reserved_headroom
    try:
        manager = ConnectionManager.from_settings(settings, **overrides)
    except ConfigurationError as e:
        logger.error(f"Invalid connection settings: {e}")
        return EXIT_NOTHING_TO_RUN

    registry, handles, errors = build_registry(args, manager)
    if not handles:
        logger.error("No runnable profiles (use --profiles-file or --profile KIND[:N])")
        return EXIT_NOTHING_TO_RUN

    root = CancellationToken(name="root")
    interrupted = _install_signal_handlers(root)

    try:
        if not args.skip_preflight:
            await generate_preflight_warnings(
                manager,
                load_user=settings.POSTGRES_USER,
                monitor_user=settings.MONITOR_USER,
                profiles=[h.config for h in handles],
                monitor_connect=make_monitor_connect(settings),
            )

        if not args.skip_schema:
            backoff = Backoff(settings.BACKOFF_BASE_SECONDS, settings.BACKOFF_MAX_SECONDS)
            try:
                ready = await bootstrap_schema(manager, root, backoff)
            except HarnessError as e:
                logger.error(f"Schema bootstrap failed: {e}")
                return EXIT_NOTHING_TO_RUN
            if not ready:
                return EXIT_INTERRUPTED

        if args.truncate:
            try:
                await truncate_working_tables(manager)
            except (HarnessError, asyncpg.PostgresError) as e:
                logger.error(f"Truncating working tables failed: {type(e).__name__}: {e}")
                return EXIT_NOTHING_TO_RUN

        controller = ScenarioController(
            registry=registry,
            manager=manager,
            root_token=root,
            shutdown_timeout=(
                args.shutdown_timeout
                if args.shutdown_timeout is not None
                else settings.SHUTDOWN_TIMEOUT_SECONDS
            ),
            backoff_factory=lambda: Backoff(
                settings.BACKOFF_BASE_SECONDS, settings.BACKOFF_MAX_SECONDS
            ),
        )
        failures = await controller.activate_all(handles)
        if len(failures) == len(handles):
            logger.error("No profile could be activated")
            return EXIT_NOTHING_TO_RUN

        snapshot = await controller.run(
            args.duration,
            stats_interval=(
                args.stats_interval
                if args.stats_interval is not None
                else settings.STATS_INTERVAL_SECONDS
            ),
        )
        for stats in snapshot["profiles"].values():
            logger.info(f"Final: {stats.summary_line()}")
        pool = snapshot["pool"]
        logger.info(
            f"Final: pool peak_leased={pool['peak_leased']} of "
            f"{pool['max_connections']} ({pool['reserved_headroom']} reserved)"
        )
        return exit_code(
            interrupted=interrupted.is_set(), errors=errors, failures=failures
        )
    finally:
        await manager.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        level=args.log_level or settings.LOG_LEVEL,
        json_output=settings.LOG_JSON,
        log_format=settings.LOG_FORMAT,
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("[pgstress] interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
