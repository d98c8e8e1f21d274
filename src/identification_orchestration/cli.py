"""Command-line interface for the identification orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError as ModelValidationError

from .aggregator import ResultAggregator
from .config import Settings
from .errors import OrchestrationError, error_body_for
from .factory import build_orchestrator
from .logging_config import configure_logging
from .models import IdentifyOptions

logger = logging.getLogger(__name__)


def _load_settings(args: argparse.Namespace) -> Settings:
    return Settings(_env_file=args.config) if args.config else Settings()


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _cmd_preview(args: argparse.Namespace) -> int:
    """Rank a client-held list of identifications with the shared scoring."""

    settings = _load_settings(args)
    data = json.loads(Path(args.file).read_text(encoding="utf-8"))
    items: List[Any] = data.get("identifications", []) if isinstance(data, dict) else data
    priorities = {
        name: endpoint.category_priorities for name, endpoint in settings.providers.items()
    }
    aggregator = ResultAggregator(settings.config.aggregation)
    try:
        ranked = aggregator.preview(
            items,
            provider_order=list(settings.providers),
            priorities=priorities,
            category=args.category,
            min_confidence=args.min_confidence,
            max_results=args.max_results,
        )
    except ModelValidationError as exc:
        _print({"ok": False, "error": "invalid_identifications", "message": str(exc)})
        return 1
    _print({"ok": True, "combined": [item.model_dump() for item in ranked]})
    return 0


def _cmd_providers(args: argparse.Namespace) -> int:
    """List configured providers and their categories."""

    settings = _load_settings(args)
    _print(
        {
            "providers": [
                {
                    "name": endpoint.name,
                    "endpoint": endpoint.endpoint,
                    "categories": endpoint.supported_categories,
                    "enabled": endpoint.enabled,
                }
                for endpoint in settings.providers.values()
            ]
        }
    )
    return 0


async def _identify(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    payload = Path(args.image).read_bytes()
    options = IdentifyOptions(
        category=args.category,
        min_confidence=args.min_confidence,
        max_results=args.max_results,
        request_id=args.request_id,
    )
    async with build_orchestrator(settings) as orchestrator:
        try:
            result = await orchestrator.identify(payload, options)
        except OrchestrationError as exc:
            _print({"ok": False, **error_body_for(exc, options.request_id).model_dump()})
            return 1
    _print({"ok": True, **result.model_dump(mode="json")})
    return 0


def _cmd_identify(args: argparse.Namespace) -> int:
    """Run a full orchestration with the configured providers."""

    return asyncio.run(_identify(args))


async def _health(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    async with build_orchestrator(settings) as orchestrator:
        probes = await orchestrator.probe_health()
        report = orchestrator.get_health_status()
    _print(
        {
            **report.model_dump(mode="json"),
            "probes": {name: state.value for name, state in probes.items()},
        }
    )
    return 0


def _cmd_health(args: argparse.Namespace) -> int:
    """Probe providers and print the health report."""

    return asyncio.run(_health(args))


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="idorch", description="Identification Orchestration CLI"
    )
    parser.add_argument("--config", required=False, help="Path to a YAML settings file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="cmd")

    prev = sub.add_parser("preview", help="Rank identifications from a JSON file")
    prev.add_argument("--file", required=True, help="JSON list (or {identifications: [...]})")
    prev.add_argument("--category", required=False)
    prev.add_argument("--min-confidence", type=float, dest="min_confidence")
    prev.add_argument("--max-results", type=int, dest="max_results")
    prev.set_defaults(func=_cmd_preview)

    prov = sub.add_parser("providers", help="List configured providers")
    prov.set_defaults(func=_cmd_providers)

    ident = sub.add_parser("identify", help="Identify an image or audio file")
    ident.add_argument("--image", required=True, help="Path to the payload file")
    ident.add_argument("--category", required=False)
    ident.add_argument("--min-confidence", type=float, dest="min_confidence")
    ident.add_argument("--max-results", type=int, dest="max_results")
    ident.add_argument("--request-id", dest="request_id")
    ident.set_defaults(func=_cmd_identify)

    health = sub.add_parser("health", help="Probe providers and report health")
    health.set_defaults(func=_cmd_health)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the identification orchestration CLI."""

    parser = create_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1
    if args.verbose:
        configure_logging(logging.DEBUG)
    else:
        configure_logging(_load_settings(args).log_level)
    result = args.func(args)
    if isinstance(result, int):
        return result
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
