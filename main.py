"""
wikicache command-line entry.

    python main.py file acme wiki docs/intro.md --ref main
    python main.py permission acme wiki alice
    python main.py prs acme wiki alice --page 2
    python main.py rate-limit
"""

import argparse
import asyncio
import json
import sys

from loguru import logger

from wikicache.services.errors import ServiceError, describe_error
from wikicache.settings import get_settings
from wikicache.wiki import WikiCache


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cached access to a GitHub-backed wiki")
    sub = parser.add_subparsers(dest="command", required=True)

    file_cmd = sub.add_parser("file", help="Show a file")
    file_cmd.add_argument("owner")
    file_cmd.add_argument("repo")
    file_cmd.add_argument("path")
    file_cmd.add_argument("--ref", default="main")

    perm_cmd = sub.add_parser("permission", help="Show a user's permission level")
    perm_cmd.add_argument("owner")
    perm_cmd.add_argument("repo")
    perm_cmd.add_argument("username")

    prs_cmd = sub.add_parser("prs", help="List a user's pull requests")
    prs_cmd.add_argument("owner")
    prs_cmd.add_argument("repo")
    prs_cmd.add_argument("username")
    prs_cmd.add_argument("--user-id", type=int)
    prs_cmd.add_argument("--base")
    prs_cmd.add_argument("--page", type=int, default=1)
    prs_cmd.add_argument("--per-page", type=int, default=10)

    sub.add_parser("rate-limit", help="Show the remaining API quota")
    return parser


async def run(args: argparse.Namespace) -> object:
    async with WikiCache(get_settings()) as wiki:
        if args.command == "file":
            return await wiki.content.get_file_content(args.owner, args.repo, args.path, args.ref)
        if args.command == "permission":
            return await wiki.permissions.get_user_permission(
                args.owner, args.repo, args.username
            )
        if args.command == "prs":
            return await wiki.pulls.get_user_pull_requests(
                args.owner,
                args.repo,
                args.username,
                user_id=args.user_id,
                base=args.base,
                page=args.page,
                per_page=args.per_page,
            )
        return await wiki.client.get_rate_limit()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = asyncio.run(run(args))
    except ServiceError as e:
        logger.error(f"{args.command} failed: {e}")
        print(describe_error(e), file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
