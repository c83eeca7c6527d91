import argparse
import logging
import sys

from database import init_db, session_scope
from schemas import CategoryIn
from services import Actor, CategoryService, UserService
from sessions import issue_session_token

logging.basicConfig(level=logging.INFO)

DEFAULT_SYSTEM_CATEGORIES = (
    "Housing",
    "Groceries",
    "Transport",
    "Utilities",
    "Health",
    "Entertainment",
)


def _create_user(args: argparse.Namespace) -> int:
    with session_scope() as session:
        user = UserService(session).create(args.name, args.email, admin=args.admin)
        if args.admin and args.seed_categories:
            categories = CategoryService(session, Actor.from_user(user))
            for name in DEFAULT_SYSTEM_CATEGORIES:
                categories.create(CategoryIn(name=name), is_system=True)
        print(user.id)
    return 0


def _issue_session(args: argparse.Namespace) -> int:
    print(issue_session_token(args.user_id))
    return 0


def _init_db(_args: argparse.Namespace) -> int:
    init_db()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Budget tracker maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init-db", help="create tables without alembic")
    init.set_defaults(func=_init_db)

    user = sub.add_parser("create-user", help="create a user and print its id")
    user.add_argument("name")
    user.add_argument("email")
    user.add_argument("--admin", action="store_true")
    user.add_argument(
        "--seed-categories",
        action="store_true",
        help="with --admin, also create the default system categories",
    )
    user.set_defaults(func=_create_user)

    token = sub.add_parser("issue-session", help="print a session cookie value")
    token.add_argument("user_id", type=int)
    token.set_defaults(func=_issue_session)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
