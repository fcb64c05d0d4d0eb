"""Generate one session from the command line (local runs and debugging)."""

from __future__ import annotations

import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.cache import get_redis_client  # noqa: E402
from core.database import SessionLocal, check_db_connection, init_db  # noqa: E402
from core.exceptions import SessionEngineError  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from services.session_generation.container import GenerationServices  # noqa: E402
from services.session_generation.orchestrator import GenerationOrchestrator  # noqa: E402
from services.session_generation.store import InMemorySessionStore, SqlSessionStore  # noqa: E402


def build_request(args) -> dict:
    if args.request_file:
        with open(args.request_file, "r", encoding="utf-8") as f:
            return json.load(f)

    request = {
        "user_id": args.user,
        "session_type": args.type,
        "difficulty": args.difficulty,
        "objectives": args.objective or [],
        "optimization_level": args.level,
        "context": {"available_time": args.available_time},
    }
    if args.duration:
        request["target_duration"] = args.duration
    return request


def summarize(session) -> None:
    template = session.template
    print(f"Session: {session.id}")
    print(f"Template: {template.name} ({template.estimated_duration} min, {template.difficulty.value})")
    for phase in template.phases:
        print(f"  - {phase.name:<24} {phase.type.value:<12} {phase.duration:>3} min")
    p = session.predictions
    print(f"Success: {p.success_probability:.2f}  Satisfaction: {p.user_satisfaction:.2f}")
    for risk in p.risk_factors:
        print(f"  ! {risk.factor} (p={risk.probability:.2f})")
    print(f"Alternatives: {', '.join(a.name for a in session.alternatives) or 'none'}")
    meta = session.metadata
    print(f"Generations: {meta.generations_run}  Partial: {meta.partial}  Time: {meta.generation_time:.2f}s")
    if meta.degraded_stages:
        print(f"Degraded: {', '.join(meta.degraded_stages)}")


def main() -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Generate a session template")
    parser.add_argument("--request-file", help="JSON generation request (overrides the flags below)")
    parser.add_argument("--user", default=os.getenv("SESSION_USER", "local-user"), help="user id")
    parser.add_argument("--type", default="development", help="session type (default: development)")
    parser.add_argument("--objective", action="append", help="objective (repeatable)")
    parser.add_argument("--duration", type=int, help="target duration in minutes")
    parser.add_argument("--available-time", type=float, default=120, help="minutes available (default: 120)")
    parser.add_argument("--difficulty", default="intermediate")
    parser.add_argument("--level", default="quick", help="quick | standard | comprehensive (default: quick)")
    parser.add_argument("--seed", type=int, help="seed for reproducible output")
    parser.add_argument("--sql", action="store_true", help="use DATABASE_URL instead of an in-memory store")
    parser.add_argument("--json", action="store_true", help="print the full session as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--log-json", action="store_true", help="emit logs as JSON lines")
    args = parser.parse_args()

    setup_logging(level="DEBUG" if args.verbose else None, fmt="json" if args.log_json else None)

    if args.sql:
        if not check_db_connection():
            print("ERROR: database unreachable, check DATABASE_URL")
            return 2
        init_db()
        store = SqlSessionStore(SessionLocal)
    else:
        store = InMemorySessionStore()

    overrides = {"seed": args.seed} if args.seed is not None else {}
    services = GenerationServices(store=store, redis=get_redis_client(), **overrides).bootstrap()
    orchestrator = GenerationOrchestrator(services)
    try:
        session = asyncio.run(orchestrator.generate(build_request(args)))
    except SessionEngineError as e:
        print(f"ERROR [{e.error_code}]: {e.detail}")
        return 2
    finally:
        orchestrator.close()

    if args.json:
        print(json.dumps(session.to_dict(), indent=2, default=str))
    else:
        summarize(session)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
