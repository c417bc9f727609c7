"""
Command line entry point: run the built-in echo pipeline for a template.
"""

import argparse
import asyncio
import json
import sys

from . import __version__
from .config.container import setup_container
from .config.settings import Settings, get_settings
from .core.builtin import default_plugins
from .core.contracts import ModeOptions, RunRequest
from .core.templates import TEMPLATES
from .observability.logging import get_logger, setup_logging
from .observability.metrics import create_meter, setup_metrics
from .observability.tracing import get_tracing_manager, setup_tracing

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="recovery-lattice", description="Staged plugin pipeline runner")
    parser.add_argument("--version", action="store_true", help="Show version")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run the built-in echo plugins through a template")
    run.add_argument("--template", choices=sorted(TEMPLATES), default=None)
    run.add_argument("--tenant", default="local")
    run.add_argument("--workspace", default="default")
    run.add_argument("--requested-by", default="cli")
    run.add_argument("--phases", default="", help="Comma separated subset of the template's stages")
    run.add_argument("--fail-stage", default=None, help="Make the plugin of this stage raise")
    run.add_argument("--parallel", action="store_true", help="Fan out plugins within a stage")
    run.add_argument("--mode", choices=("live", "dry-run"), default="live")
    run.add_argument("--timeout-ms", type=int, default=None, help="Run deadline")
    run.add_argument("--payload", default='{"source": "cli"}', help="JSON input of the first stage")
    return parser


def setup_observability(settings: Settings) -> None:
    obs = settings.observability
    setup_logging(obs.log_level)
    setup_tracing(obs.service_name, obs.service_version, obs.otlp_endpoint, obs.enable_tracing)
    if obs.enable_metrics:
        setup_metrics(create_meter(obs.service_name, obs.service_version, obs.otlp_endpoint))


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    container = setup_container(settings)
    template_id = args.template or settings.engine.default_template
    template = TEMPLATES[template_id]

    registered = container.get("registries")[template_id].register_many(
        default_plugins(
            template,
            fail_stage=args.fail_stage,
            timeout_ms=settings.engine.default_plugin_timeout_ms,
        )
    )
    if not registered.ok:
        print(f"error: {registered.error}", file=sys.stderr)
        return 2

    request = RunRequest(
        tenant_id=args.tenant,
        workspace_id=args.workspace,
        requested_by=args.requested_by,
        template_id=template_id,
        phases=[p.strip() for p in args.phases.split(",") if p.strip()],
        mode=args.mode,
        mode_options=ModeOptions(parallel=args.parallel, timeout_ms=args.timeout_ms),
    )

    async with container.lifespan():
        result = await container.get("run_service").execute(request, json.loads(args.payload))

    if not result.ok:
        print(f"error: {result.error}", file=sys.stderr)
        return 2

    print(result.value.model_dump_json(by_alias=True, indent=2))
    return 0 if result.value.status in ("succeeded", "degraded", "queued") else 1


def main(argv=None) -> int:
    """Main application entry point."""
    parser = build_parser()
    # Use empty list if no argv provided to avoid pytest argument conflicts
    if argv is None:
        argv = []
    args = parser.parse_args(argv)

    if args.version:
        print(f"recovery-lattice v{__version__}")
        return 0

    if args.command != "run":
        parser.print_help()
        return 0

    settings = get_settings()
    setup_observability(settings)
    logger.info("Recovery lattice starting", environment=settings.environment, template=args.template)

    try:
        return asyncio.run(run_command(args, settings))
    finally:
        get_tracing_manager().shutdown()


def cli_main():
    """CLI entry point."""
    try:
        sys.exit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli_main()
