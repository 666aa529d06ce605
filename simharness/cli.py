"""
Command-line entry point.

Sub-commands:
    unit    Run the platform smoke suite in dependency order with retries
    stress  Provision virtual users and submit orders concurrently
    order   Print the smoke suite's execution order without running it

Examples:
    simharness unit --log-format json
    simharness stress --users 50 --orders-per-user 20 --mode market
    simharness stress --users 20 --duration 60 --concurrency 10
"""

import argparse
import asyncio
import signal
import sys
from typing import Any, Awaitable, Optional, Sequence

import httpx
import structlog

from .config.logging import setup_structured_logging
from .config.settings import SIMULATION_MODES, HarnessSettings
from .integrations.exceptions import ProvisioningError, ServiceUnavailableError
from .integrations.http_client import ServiceClientFactory, ServiceConnectivityChecker
from .integrations.identity import UserProvisioner
from .integrations.smoke_suite import build_platform_suite
from .integrations.trading import TRADING_SERVICE, OrderSubmissionExecutor
from .loadgen.generator import ConcurrentLoadGenerator
from .monitoring.metrics import HarnessMetrics
from .monitoring.progress import LoggingProgressConsumer, ProgressReporter, ProgressSnapshot
from .orchestration.dependency_graph import order_tests
from .orchestration.exceptions import ConfigurationError, RunAbortedError
from .orchestration.executor import RetryingTestExecutor
from .results.collector import RunResultCollector, RunSummary
from .results.report import ReportGenerator, run_directory

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

STRESS_REQUIRED_SERVICES = ("identity", TRADING_SERVICE)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="simharness",
        description="Functional and load testing harness for the simulated trading platform",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--env-file", help="Path to a .env file (default: discovered from the working directory)")
    common.add_argument("--log-level", help="Log level (default: INFO)")
    common.add_argument("--log-format", choices=["json", "console"], help="Log renderer (default: console)")
    common.add_argument("--output-dir", help="Directory for run logs and reports (default: logs)")
    common.add_argument("--pushgateway", help="Prometheus push gateway URL for run metrics")

    subparsers = parser.add_subparsers(dest="command", required=True)

    unit = subparsers.add_parser("unit", parents=[common], help="Run the platform smoke suite")
    unit.add_argument("--timeout", type=float, help="Per-attempt test timeout in seconds (default: 30)")
    unit.add_argument("--retries", type=int, help="Maximum attempts per test (default: 3)")

    stress = subparsers.add_parser("stress", parents=[common], help="Run a concurrent order load test")
    stress.add_argument("--users", type=int, help="Number of virtual users (default: 10)")
    bound = stress.add_mutually_exclusive_group()
    bound.add_argument("--orders-per-user", type=int, help="Orders submitted by each user (default: 10)")
    bound.add_argument("--duration", type=float, help="Run for this many seconds instead of a fixed count")
    stress.add_argument("--concurrency", type=int, help="Maximum operations in flight (default: one per user)")
    stress.add_argument("--mode", choices=SIMULATION_MODES, help="Order strategy (default: random)")
    stress.add_argument("--delay-min", type=float, help="Minimum pause between a user's orders in ms")
    stress.add_argument("--delay-max", type=float, help="Maximum pause between a user's orders in ms")
    stress.add_argument("--seed", type=int, help="Seed for reproducible order generation")

    subparsers.add_parser("order", parents=[common], help="Print the smoke suite execution order")
    return parser


def settings_from_args(args: argparse.Namespace) -> HarnessSettings:
    """
    Load settings from the environment and apply command-line overrides.

    Raises:
        ConfigurationError: When the combined settings are invalid
    """
    settings = HarnessSettings.from_environment(env_file=args.env_file)

    overrides = {
        'log_level': args.log_level.upper() if args.log_level else None,
        'log_format': args.log_format,
        'log_dir': args.output_dir,
        'pushgateway_url': args.pushgateway,
        'test_timeout_seconds': getattr(args, 'timeout', None),
        'max_attempts': getattr(args, 'retries', None),
        'virtual_users': getattr(args, 'users', None),
        'orders_per_user': getattr(args, 'orders_per_user', None),
        'duration_seconds': getattr(args, 'duration', None),
        'concurrency': getattr(args, 'concurrency', None),
        'simulation_mode': getattr(args, 'mode', None),
        'delay_min_ms': getattr(args, 'delay_min', None),
        'delay_max_ms': getattr(args, 'delay_max', None),
        'seed': getattr(args, 'seed', None),
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(settings, name, value)

    if getattr(args, 'orders_per_user', None) is not None:
        settings.duration_seconds = None

    settings.validate()
    return settings


def _new_factory(settings: HarnessSettings, transport: Optional[httpx.AsyncBaseTransport]) -> ServiceClientFactory:
    return ServiceClientFactory(
        service_urls=settings.service_urls,
        timeout=settings.request_timeout,
        transport=transport,
    )


def _aborted(
    collector: RunResultCollector,
    error: Exception,
    message: str,
    total: Optional[int] = None,
    reporter: Optional[ProgressReporter] = None,
) -> RunSummary:
    aborted = RunAbortedError(str(error))
    aborted.__cause__ = error
    collector.set_error(aborted)
    if reporter is not None:
        reporter.reopen()
        reporter.report(ProgressSnapshot(
            message=message,
            percentage=100.0,
            completed=0,
            total=total or 0,
            passed=0,
            failed=0,
            log_message=str(error),
            is_final=True,
        ))
    return collector.build(total=total)


async def run_unit(
    settings: HarnessSettings,
    reporter: Optional[ProgressReporter] = None,
    metrics: Optional[HarnessMetrics] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RunSummary:
    """Check connectivity, then run the ordered smoke suite."""
    policy = settings.retry_policy()
    collector = RunResultCollector(
        kind="unit",
        configuration={
            'timeout_seconds': policy.timeout_seconds,
            'max_attempts': policy.max_attempts,
            'backoff_base_seconds': policy.backoff_base_seconds,
            'service_urls': dict(settings.service_urls),
        },
    )

    async with _new_factory(settings, transport) as factory:
        order = order_tests(build_platform_suite(factory).cases())
        try:
            await ServiceConnectivityChecker(factory).require(factory.service_urls)
        except ServiceUnavailableError as e:
            logger.error("Test run not started", error=str(e))
            collector.add_warnings(order.warnings)
            return _aborted(collector, e, "Test run aborted", total=len(order), reporter=reporter)

        executor = RetryingTestExecutor(reporter=reporter, metrics=metrics)
        return await executor.run(order, policy, collector=collector)


async def run_stress(
    settings: HarnessSettings,
    reporter: Optional[ProgressReporter] = None,
    metrics: Optional[HarnessMetrics] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RunSummary:
    """Check connectivity, provision users and run the order load profile."""
    profile = settings.load_profile()
    configuration = dict(profile.to_dict(), simulation_mode=settings.simulation_mode)
    collector = RunResultCollector(kind="stress", configuration=configuration)

    async with _new_factory(settings, transport) as factory:
        try:
            await ServiceConnectivityChecker(factory).require(STRESS_REQUIRED_SERVICES)
            users = await UserProvisioner(factory).provision(profile.virtual_users)
        except (ServiceUnavailableError, ProvisioningError) as e:
            logger.error("Load run not started", error=str(e))
            return _aborted(collector, e, "Load run aborted", total=profile.planned_operations, reporter=reporter)

        generator = ConcurrentLoadGenerator(reporter=reporter, metrics=metrics)
        executor = OrderSubmissionExecutor(factory, mode=settings.simulation_mode)
        return await generator.run(profile, executor, users=users, collector=collector)


def describe_order(settings: HarnessSettings) -> str:
    """Render the smoke suite's execution order and ordering warnings."""
    factory = ServiceClientFactory(service_urls=settings.service_urls, timeout=settings.request_timeout)
    order = order_tests(build_platform_suite(factory).cases())

    lines = [f"{position:>3}. {case.identifier}" for position, case in enumerate(order, start=1)]
    if order.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  {warning}" for warning in order.warnings)
    return "\n".join(lines)


async def _cancel_on_interrupt(run: Awaitable[Any]) -> Any:
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(run)
    try:
        loop.add_signal_handler(signal.SIGINT, task.cancel)
    except NotImplementedError:
        logger.debug("SIGINT handler not supported on this platform")
        return await task

    try:
        return await task
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _publish(settings: HarnessSettings, metrics: HarnessMetrics) -> None:
    if not settings.pushgateway_url:
        return
    try:
        metrics.push(settings.pushgateway_url)
    except OSError as e:
        logger.warning("Metrics push failed", gateway=settings.pushgateway_url, error=str(e))


def execute(settings: HarnessSettings, kind: str) -> RunSummary:
    """Run one unit or stress run with logging, progress, metrics and reports."""
    output_dir = run_directory(settings.log_dir, kind, run_id=settings.run_id)
    setup_structured_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_dir=output_dir if settings.log_file_enabled else None,
        run_id=settings.run_id,
    )

    reporter = ProgressReporter(name=f"{kind}-progress")
    reporter.subscribe(LoggingProgressConsumer(every=1 if kind == "unit" else 4), name="log")
    metrics = HarnessMetrics(run_kind=kind)
    runner = run_unit if kind == "unit" else run_stress

    try:
        summary = asyncio.run(_cancel_on_interrupt(runner(settings, reporter=reporter, metrics=metrics)))
    finally:
        reporter.shutdown()

    generator = ReportGenerator(output_dir)
    paths = generator.generate(summary)
    _publish(settings, metrics)

    print(generator.render_text(summary))
    print(f"Reports written to {paths['text_report']} and {paths['json_report']}")
    return summary


def exit_code_for(summary: RunSummary) -> int:
    if summary.error is not None:
        return EXIT_FAILED
    if summary.kind == "unit" and summary.failed:
        return EXIT_FAILED
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments, run the requested command and return its exit code."""
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "order":
        setup_structured_logging(log_level=settings.log_level, log_format=settings.log_format)
        print(describe_order(settings))
        return EXIT_OK

    try:
        summary = execute(settings, args.command)
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.warning("Run interrupted before a summary was produced", command=args.command)
        return EXIT_INTERRUPTED

    return exit_code_for(summary)


if __name__ == "__main__":
    sys.exit(main())
