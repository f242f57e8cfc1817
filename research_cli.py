import argparse
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_models(models: List[dict]) -> None:
    if not models:
        print("No models registered.")
        return
    for model in models:
        marker = "ok" if model.get("credential_ok") else "no key"
        print(f"{model.get('id') or '':<22} {model.get('tier') or '':<10} {model.get('provider') or '':<16} {marker}")


def _print_research(data: dict) -> None:
    meta = data.get("metadata") or {}
    print(data.get("report") or "")
    print()
    print(
        f"Sources: {meta.get('total_sources', 0)}  Queries: {meta.get('queries_executed', 0)}  "
        f"Model: {meta.get('model_used') or '-'}  Time: {meta.get('execution_time_ms', 0)} ms"
    )
    errors = meta.get("errors") or []
    if errors:
        print(f"Partial failures: {len(errors)}")
        for err in errors[:5]:
            print(f"- {err}")


def run_research(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "query": args.query,
        "report_type": args.report_type,
        "include_fact_verification": not args.no_verify,
        "prefer_local": not args.commercial,
    }
    if args.max_sources:
        payload["max_sources"] = args.max_sources
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/research"), json=payload, timeout=args.timeout)
        data = resp.json()
        if resp.status_code >= 400 or not data.get("success"):
            print(f"Research failed: {data.get('error') or data.get('detail') or resp.status_code}")
            return 1
        _print_research(data)
    return 0


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "messages": [{"role": "user", "content": args.prompt}],
        "task": args.task,
        "orchestration": args.orchestration,
        "prefer_local": not args.commercial,
    }
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/llm"), json=payload, timeout=args.timeout)
        data = resp.json()
        if resp.status_code >= 400 or not data.get("success"):
            print(f"LLM call failed: {data.get('error') or data.get('detail') or resp.status_code}")
            return 1
        print(data.get("content") or "")
        skipped = data.get("fallbacks_used") or []
        suffix = f" (skipped: {', '.join(skipped)})" if skipped else ""
        print(f"\n-- {data.get('model_used')} [{data.get('inference_type')}]{suffix}")
    return 0


def run_models(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/models"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch models: HTTP {resp.status_code}")
            return 1
        _print_models(resp.json().get("models") or [])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Research router CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    research = subparsers.add_parser("research", help="Run the research pipeline")
    research.add_argument("query", help="Research question")
    research.add_argument(
        "--report-type",
        default="research_report",
        choices=["research_report", "resource_report", "outline_report", "custom_report"],
    )
    research.add_argument("--max-sources", type=int, default=None)
    research.add_argument("--no-verify", action="store_true", help="Skip fact verification")
    research.add_argument("--commercial", action="store_true", help="Prefer commercial models over local ones")
    research.add_argument("--timeout", type=float, default=600, help="Request timeout seconds")

    ask = subparsers.add_parser("ask", help="Send a single prompt through the router")
    ask.add_argument("prompt")
    ask.add_argument("--task", default=None)
    ask.add_argument(
        "--orchestration",
        default="simple",
        choices=["simple", "phased_graph", "role_crew", "bounded_retry"],
    )
    ask.add_argument("--commercial", action="store_true")
    ask.add_argument("--timeout", type=float, default=300)

    subparsers.add_parser("models", help="List registered models and credential status")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "research":
        return run_research(args)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "models":
        return run_models(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
