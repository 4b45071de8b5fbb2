"""Command-line entry point: run cookstyle across an organization's cookbooks."""

import argparse
import json
import logging
import sys
import threading

from rich.console import Console
from rich.live import Live

from commands import CommandError
from cookstyle import Cookstyle, CookstyleError
from discovery import RepositoryDiscovery
from git_ops import GitClient
from github_api import AuthenticationError, GitHubClient, GitHubError
from processor import RepositoryProcessor
from reconciler import ArtifactReconciler
from reporter import RunProgress, print_cache_status, print_config, print_repositories, print_summary, write_report
from result_cache import Cache
from retry_policy import RetryCoordinator
from scheduler import Scheduler
from settings import LOG_LEVELS, OUTPUT_FORMATS, ConfigError, Settings, load_settings

__version__ = "0.1.0"

log = logging.getLogger("runner")
console = Console()


def _configure_logging(args: argparse.Namespace, settings: Settings | None = None) -> None:
    if args.verbose:
        level = "DEBUG"
    elif args.quiet:
        level = "ERROR"
    elif args.log_level:
        level = args.log_level
    elif settings is not None:
        level = settings.log_level
    else:
        level = "INFO"
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )


def _load(args: argparse.Namespace, overrides: dict | None = None) -> Settings:
    settings = load_settings(args.settings, overrides=overrides)
    _configure_logging(args, settings)
    return settings


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace, stop_event: threading.Event) -> int:
    settings = _load(args, {
        "filter_repos": args.repos or None,
        "dry_run": True if args.dry_run else None,
        "force_refresh": True if args.force else None,
        "use_cache": False if args.no_cache else None,
        "thread_count": args.threads,
        "output_format": args.format,
    })
    github = GitHubClient(timeout=settings.command_timeout)
    github.check_auth()

    cache = Cache(settings.cache_dir)
    if args.rebuild_cache:
        cache.invalidate_all()

    tasks = RepositoryDiscovery(github).discover(settings.owner, settings.topics, settings.filter_repos)
    if not tasks:
        console.print("[yellow]No repositories matched the configured owner, topics and filters.[/yellow]")
        return 0

    processor = RepositoryProcessor(
        settings,
        GitClient(settings.git_name, settings.git_email, timeout=settings.command_timeout),
        Cookstyle(timeout=settings.command_timeout),
        ArtifactReconciler(github, base_branch=settings.default_branch),
        cache,
    )
    retry = RetryCoordinator(cache, delay=settings.retry_delay, should_stop=stop_event.is_set)
    progress = RunProgress(tasks)
    scheduler = Scheduler(
        processor,
        retry,
        settings.workspace_dir,
        retry_count=settings.retry_count,
        task_timeout=settings.task_timeout,
        stop_event=stop_event,
        on_event=progress.handle_event,
    )

    if settings.dry_run:
        console.rule("[bold cyan]Dry Run: no commits, pull requests or issues will be created")
    if settings.output_format == "json":
        summary = scheduler.run(tasks, settings.thread_count)
    else:
        with Live(get_renderable=progress.build_table, console=console, refresh_per_second=2):
            summary = scheduler.run(tasks, settings.thread_count)

    cache_stats = cache.stats.to_dict()
    if settings.output_format == "json":
        console.print_json(json.dumps({**summary.to_dict(), "cache": cache_stats}))
    else:
        print_summary(summary, cache_stats, out=console)
    if settings.report_path:
        path = write_report(summary, settings.report_path, cache_stats)
        log.info("Wrote run report to %s", path)
    return 0


def cmd_list(args: argparse.Namespace, stop_event: threading.Event) -> int:
    settings = _load(args, {"output_format": args.format})
    github = GitHubClient(timeout=settings.command_timeout)
    github.check_auth()
    tasks = RepositoryDiscovery(github).discover(settings.owner, settings.topics, settings.filter_repos)
    print_repositories(tasks, settings.output_format, out=console)
    return 0


def cmd_status(args: argparse.Namespace, stop_event: threading.Event) -> int:
    settings = _load(args, {"output_format": args.format})
    print_cache_status(Cache(settings.cache_dir), settings.output_format, out=console)
    return 0


def cmd_config(args: argparse.Namespace, stop_event: threading.Event) -> int:
    settings = _load(args)
    if args.validate:
        console.print("[green]Configuration is valid.[/green]")
        return 0
    print_config(settings, args.format or settings.output_format, out=console)
    return 0


def cmd_version(args: argparse.Namespace, stop_event: threading.Event) -> int:
    _configure_logging(args)
    console.print(f"cookstyle-runner {__version__}")
    try:
        console.print(f"cookstyle {Cookstyle().version()}")
    except (CookstyleError, CommandError) as exc:
        console.print(f"[yellow]cookstyle not available: {exc}[/yellow]")
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cookstyle-runner",
        description="Run cookstyle across an organization's cookbooks and open fix pull requests or issues",
    )
    parser.add_argument("--settings", default=None, help="Path to settings.yml (default: ./settings.yml or $GCR_SETTINGS)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, default=None, help="Log level (overrides settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Process repositories")
    run.add_argument("repos", nargs="*", help="Only process repositories whose name contains one of these")
    run.add_argument("--dry-run", action="store_true", default=False, help="Analyze only; do not push or open artifacts")
    run.add_argument("--force", action="store_true", default=False, help="Ignore cached results")
    run.add_argument("--no-cache", action="store_true", default=False, help="Neither read nor write the cache")
    run.add_argument("--rebuild-cache", action="store_true", default=False, help="Clear the cache before running")
    run.add_argument("--threads", type=int, default=None, help="Number of parallel workers")
    run.add_argument("--format", choices=OUTPUT_FORMATS, default=None, help="Output format")
    run.set_defaults(handler=cmd_run)

    list_cmd = sub.add_parser("list", help="List repositories that would be processed")
    list_cmd.add_argument("--format", choices=OUTPUT_FORMATS, default=None, help="Output format")
    list_cmd.set_defaults(handler=cmd_list)

    status = sub.add_parser("status", help="Show cache status")
    status.add_argument("--format", choices=OUTPUT_FORMATS, default=None, help="Output format")
    status.set_defaults(handler=cmd_status)

    config = sub.add_parser("config", help="Show or validate the effective configuration")
    config.add_argument("--validate", action="store_true", default=False, help="Only validate")
    config.add_argument("--format", choices=OUTPUT_FORMATS, default=None, help="Output format")
    config.set_defaults(handler=cmd_config)

    version = sub.add_parser("version", help="Show version information")
    version.set_defaults(handler=cmd_version)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    _configure_logging(args)
    stop_event = threading.Event()

    try:
        code = args.handler(args, stop_event)
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        code = 1
    except AuthenticationError as exc:
        console.print(f"[bold red]Authentication failed:[/bold red] {exc}")
        code = 1
    except GitHubError as exc:
        console.print(f"[bold red]GitHub request failed:[/bold red] {exc}")
        code = 1
    except KeyboardInterrupt:
        stop_event.set()
        console.print("\n[bold red]Interrupted![/bold red] Stopping workers…")
        log.warning("KeyboardInterrupt, shutting down")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
