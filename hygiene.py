"""
Operational commands for candidate data hygiene and score backfill.

    python hygiene.py normalize [--apply] [--batch-size N]
    python hygiene.py dupes
    python hygiene.py merge-plan
    python hygiene.py merge --confirm GROUP_KEY [GROUP_KEY ...]
    python hygiene.py backfill

Everything except `normalize --apply`, `merge` and `backfill` is read-only.
"""
import sys
import json
import asyncio
import argparse
import logging

from deps import build_context, init_db
from log import setup_logging
from normalize import (
    BATCH_SIZE, apply_normalization, confirm_merges, find_duplicates, iter_candidates,
    plan_merge, plan_normalization,
)
from webhooks import backfill_interview_scores

logger = logging.getLogger("hygiene")


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def cmd_normalize(ctx, args) -> int:
    changes = plan_normalization(ctx.engine, args.batch_size)
    if not args.apply:
        _print({"dry_run": True, "changes": [vars(c) for c in changes]})
        return 0
    result = apply_normalization(ctx.engine, changes, batch_size=args.batch_size)
    _print({"dry_run": False, **result})
    return 1 if result["conflicts"] else 0


def _groups(ctx):
    return find_duplicates(iter_candidates(ctx.engine))


def cmd_dupes(ctx, args) -> int:
    _print([
        {"key": g.key, "kind": g.kind, "role_id": g.role_id, "members": [c.id for c in g.members]}
        for g in _groups(ctx)
    ])
    return 0


def cmd_merge_plan(ctx, args) -> int:
    _print([vars(plan_merge(g)) for g in _groups(ctx)])
    return 0


def cmd_merge(ctx, args) -> int:
    plans = [plan_merge(g) for g in _groups(ctx)]
    known = {p.group_key for p in plans}
    unknown = [k for k in args.confirm if k not in known]
    if unknown:
        logger.error("unknown duplicate group(s): %s", ", ".join(unknown))
        return 2
    done = confirm_merges(ctx.engine, plans, args.confirm)
    _print([vars(p) for p in done])
    return 0


def cmd_backfill(ctx, args) -> int:
    _print(asyncio.run(backfill_interview_scores(ctx)))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hygiene", description="Candidate data hygiene")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("normalize", help="canonicalize phone, email and name fields")
    p.add_argument("--apply", action="store_true", help="write changes (default is a dry run)")
    p.add_argument("--batch-size", type=int, default=BATCH_SIZE)
    p.set_defaults(func=cmd_normalize)

    sub.add_parser("dupes", help="report duplicate groups").set_defaults(func=cmd_dupes)
    sub.add_parser("merge-plan", help="list keeper and losers per group").set_defaults(func=cmd_merge_plan)

    p = sub.add_parser("merge", help="mark losers of confirmed groups as duplicates")
    p.add_argument("--confirm", nargs="+", required=True, metavar="GROUP_KEY")
    p.set_defaults(func=cmd_merge)

    sub.add_parser("backfill", help="score video_ready interviews missing scores").set_defaults(func=cmd_backfill)
    return parser


def main(argv=None, ctx=None) -> int:
    args = build_parser().parse_args(argv)
    if ctx is None:
        ctx = build_context()
        setup_logging(ctx.settings.log_level, ctx.settings.log_file)
    init_db(ctx.engine)
    return args.func(ctx, args)


if __name__ == "__main__":
    sys.exit(main())
