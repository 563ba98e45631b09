"""
CLI interface for the PopCart reconciliation engine.

Supports five modes:
  simulate  — Play a session script, write pass reports and final state.
  replay    — Re-play a session and verify the final state digest.
  generate  — Generate a synthetic session script.
  serve     — Run the sandbox storefront (Flask).
  reconcile — Run one reconciliation pass against a live storefront.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from popcart_engine.storefront import DEFAULT_PORT


def _setup_logging(verbose: bool = False) -> None:
    """Configure structured logging."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)-7s] %(name)s — %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


async def _reconcile_once(base_url: str, config_source: str, shop: str | None):
    from popcart_engine.catalog import HttpCatalog
    from popcart_engine.config import load_config
    from popcart_engine.loop import ReconciliationLoop
    from popcart_engine.mirror import CartMirror
    from popcart_engine.transport import HttpCartTransport

    config = load_config(config_source, shop=shop)
    transport = HttpCartTransport(base_url)
    loop = ReconciliationLoop(
        CartMirror(transport),
        config,
        HttpCatalog(base_url, session=transport.session),
    )
    return await loop.run_pass("cli")


def _serve(session_path: str | None, host: str, port: int, debug: bool) -> None:
    from popcart_engine.simulate import build_session, load_session
    from popcart_engine.storefront import create_app
    from popcart_engine.transport import CartStore

    store = CartStore()
    settings = {}
    if session_path:
        session = load_session(session_path)
        store, _, _ = build_session(session)
        settings = session.get("config") or {}
    app = create_app(store, settings)
    print(f"\n  PopCart sandbox storefront → http://{host}:{port}\n")
    app.run(host=host, port=port, debug=debug)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="popcart_engine",
        description="PopCart promotion reconciliation engine",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug-level logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # --- simulate ---
    sim_p = sub.add_parser("simulate", help="Play a session script")
    sim_p.add_argument("--session", required=True, help="Path to session.json")
    sim_p.add_argument("--reports", required=True, help="Path to pass_reports.jsonl")
    sim_p.add_argument("--state", default="", help="Optional path to write the final state")

    # --- replay ---
    replay_p = sub.add_parser("replay", help="Replay a session and verify its digest")
    replay_p.add_argument("--session", required=True, help="Path to session.json")
    replay_p.add_argument("--reports", required=True, help="Path to pass_reports.jsonl")
    replay_p.add_argument("--verify", required=True, help="Path to expected_digest.txt")

    # --- generate ---
    gen_p = sub.add_parser("generate", help="Generate a synthetic session script")
    gen_p.add_argument("--output", required=True, help="Path to output session.json")
    gen_p.add_argument(
        "--count", type=int, default=200, help="Number of shopper actions (default 200)"
    )
    gen_p.add_argument(
        "--seed", type=int, default=42, help="Random seed for reproducibility"
    )

    # --- serve ---
    serve_p = sub.add_parser("serve", help="Run the sandbox storefront")
    serve_p.add_argument("--session", default=None, help="Session script to preload catalog, cart and settings")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve_p.add_argument("--debug", action="store_true", help="Flask debug mode")

    # --- reconcile ---
    rec_p = sub.add_parser("reconcile", help="Run one pass against a live storefront")
    rec_p.add_argument("--base-url", required=True, help="Storefront base URL")
    rec_p.add_argument(
        "--config", default=None,
        help="Settings JSON path or URL (default: <base-url>/apps/popcart)",
    )
    rec_p.add_argument("--shop", default=None, help="Shop domain passed to the settings endpoint")

    args = parser.parse_args(argv)
    _setup_logging(verbose=args.verbose)

    logger = logging.getLogger("popcart_engine.cli")

    if args.command == "simulate":
        from popcart_engine.simulate import simulate_session

        try:
            digest = simulate_session(args.session, args.reports, args.state)
            print(f"SIMULATE OK — Final state digest: {digest}")
        except Exception as exc:
            logger.exception("Simulation failed")
            print(f"ERROR: {exc}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "replay":
        from popcart_engine.simulate import replay_session

        try:
            ok = replay_session(args.session, args.reports, args.verify)
            if ok:
                print("REPLAY OK: digest matches ✓")
            else:
                print("REPLAY FAILED: digest does NOT match ✗", file=sys.stderr)
                sys.exit(1)
        except Exception as exc:
            logger.exception("Replay failed")
            print(f"ERROR: {exc}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "generate":
        from popcart_engine.generate_sessions import generate_session

        try:
            generate_session(args.output, args.count, args.seed)
            print(f"Generated {args.count} actions → {args.output}")
        except Exception as exc:
            logger.exception("Generation failed")
            print(f"ERROR: {exc}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "serve":
        try:
            _serve(args.session, args.host, args.port, args.debug)
        except Exception as exc:
            logger.exception("Storefront failed")
            print(f"ERROR: {exc}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "reconcile":
        config_source = args.config or f"{args.base_url.rstrip('/')}/apps/popcart"
        try:
            report = asyncio.run(_reconcile_once(args.base_url, config_source, args.shop))
            print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
            if report.aborted:
                sys.exit(1)
        except Exception as exc:
            logger.exception("Reconciliation failed")
            print(f"ERROR: {exc}", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    main()
