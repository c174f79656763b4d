"""
Foresight — Store CLI

Inspect the checkpoint / episode / graph database.

Usage:
    # Graph and store counts, most important capabilities
    python -m speculation.cli stats

    # Checkpoints for a workflow (newest first)
    python -m speculation.cli checkpoints <workflow_id>

    # Latest checkpointed state as JSON
    python -m speculation.cli show <workflow_id>

    # Recent episodes, optionally for one context hash
    python -m speculation.cli episodes [--context HASH] [--limit N]

    # Keep only the newest N checkpoints of a workflow
    python -m speculation.cli prune <workflow_id> [--keep N]
"""

import argparse
import json
import sys
from datetime import datetime

from engine.checkpoint import CheckpointStore, CheckpointUnavailable
from engine.config import load_engine_config


def _ts(t: float) -> str:
    return datetime.fromtimestamp(t).strftime("%Y-%m-%d %H:%M:%S")


def cmd_stats(args, store: CheckpointStore):
    """Show store counts and the top capabilities by importance."""
    counts = store.stats()
    for k, v in counts.items():
        print(f"  {k:<14} {v}")

    nodes, _ = store.load_graph()
    top = sorted(nodes, key=lambda n: (-n.get("importance", 0.0), n["node_id"]))[:args.top]
    if top:
        print(f"\n  Top {len(top)} capabilities by importance:")
        for n in top:
            flag = " (deprecated)" if n.get("deprecated") else ""
            print(f"    {n['importance']:.4f}  {n['node_id']}{flag}")


def cmd_checkpoints(args, store: CheckpointStore):
    """List checkpoints for a workflow."""
    infos = store.list_checkpoints(args.workflow_id)
    if not infos:
        print(f"No checkpoints for {args.workflow_id}")
        return
    for info in infos:
        print(f"  {info.checkpoint_id}  {_ts(info.created_at)}  seq={info.sequence}")


def cmd_show(args, store: CheckpointStore):
    """Print the latest state of a workflow."""
    state = store.load_checkpoint(args.workflow_id)
    if state is None:
        print(f"No checkpoint for {args.workflow_id}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(state.to_dict(), indent=2, default=str))


def cmd_episodes(args, store: CheckpointStore):
    """List recent episodes."""
    episodes = store.list_episodes(context_hash=args.context, limit=args.limit)
    if not episodes:
        print("No episodes")
        return
    for ep in episodes:
        verdict = "-" if ep["correct"] is None else ("ok" if ep["correct"] else "miss")
        print(f"  {_ts(ep['created_at'])}  {ep['event_type']:<20} {verdict:<5} "
              f"{ep['capability_id']}  [{ep['workflow_id']}]")

    if args.context:
        stats = store.episode_stats(args.context)
        if stats:
            print("\n  Speculation outcomes in this context:")
            for cap, s in sorted(stats.items()):
                print(f"    {cap:<30} n={s['total']:<4} success={s['success_rate']:.0%}")


def cmd_prune(args, store: CheckpointStore):
    """Delete all but the newest N checkpoints."""
    n = store.prune_checkpoints(args.workflow_id, keep=args.keep)
    print(f"Pruned {n} checkpoints for {args.workflow_id} (kept {args.keep})")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="speculation.cli",
        description="Inspect the foresight checkpoint store",
    )
    parser.add_argument("--db", help="SQLite path (default: checkpoint.path from config)")
    parser.add_argument("--config", default="", help="Base config file")
    subs = parser.add_subparsers(dest="command")

    stats_p = subs.add_parser("stats", help="Show store and graph statistics")
    stats_p.add_argument("--top", type=int, default=10)

    cp_p = subs.add_parser("checkpoints", help="List checkpoints for a workflow")
    cp_p.add_argument("workflow_id")

    show_p = subs.add_parser("show", help="Show latest workflow state")
    show_p.add_argument("workflow_id")

    ep_p = subs.add_parser("episodes", help="List recent episodes")
    ep_p.add_argument("--context", help="Filter by context hash")
    ep_p.add_argument("--limit", type=int, default=50)

    prune_p = subs.add_parser("prune", help="Prune old checkpoints")
    prune_p.add_argument("workflow_id")
    prune_p.add_argument("--keep", type=int, default=5)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    db_path = args.db or load_engine_config(args.config).checkpoint.path
    try:
        store = CheckpointStore(db_path, auto_prune=False)
    except CheckpointUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.command == "stats":
            cmd_stats(args, store)
        elif args.command == "checkpoints":
            cmd_checkpoints(args, store)
        elif args.command == "show":
            cmd_show(args, store)
        elif args.command == "episodes":
            cmd_episodes(args, store)
        elif args.command == "prune":
            cmd_prune(args, store)
    finally:
        store.close()


if __name__ == "__main__":
    main()
