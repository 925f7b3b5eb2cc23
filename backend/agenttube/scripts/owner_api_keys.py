from __future__ import annotations

import argparse
from collections.abc import Sequence

from backend.agenttube.config import load_settings
from backend.agenttube.repositories.database import Database
from backend.agenttube.repositories.owner_api_key_repository import OwnerApiKeyRepository


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage owner API keys for the AgentTube backend.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Create a new owner API key.")
    create_parser.add_argument("--owner-id", required=True, help="Owner the key authenticates as.")
    create_parser.add_argument(
        "--label",
        default="default",
        help="Human-readable label (for example: web-app).",
    )

    revoke_parser = subparsers.add_parser("revoke", help="Revoke an existing owner API key.")
    revoke_parser.add_argument("--key-id", required=True, help="Key id (okey_...).")

    list_parser = subparsers.add_parser("list", help="List owner API keys.")
    list_parser.add_argument("--all", action="store_true", help="Include revoked keys.")

    return parser.parse_args(argv)


def _print_key_list(repository: OwnerApiKeyRepository, *, include_revoked: bool) -> None:
    keys = repository.list_keys(include_revoked=include_revoked)
    if not keys:
        print("No owner API keys found.")
        return

    print("key_id\towner_id\tlabel\tcreated_at\trevoked_at\tlast_used_at")
    for key in keys:
        print(
            "\t".join(
                [
                    key.key_id,
                    key.owner_id,
                    key.label,
                    key.created_at,
                    key.revoked_at or "-",
                    key.last_used_at or "-",
                ]
            )
        )


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = load_settings(validate_provider_secrets=False)
    database = Database(settings.db_path)
    database.initialize()
    repository = OwnerApiKeyRepository(database)

    if args.command == "create":
        record, token = repository.create_key(args.owner_id, label=args.label)
        print(f"Created owner API key: {record.key_id}")
        print(f"Owner: {record.owner_id} ({record.label})")
        print(f"Token (save now, only shown once): {token}")
        print(f"Authorization header: Bearer {token}")
        return

    if args.command == "revoke":
        if repository.revoke_key(args.key_id):
            print(f"Revoked owner API key: {args.key_id}")
        else:
            print(f"No active owner API key found for: {args.key_id}")
        return

    if args.command == "list":
        _print_key_list(repository, include_revoked=args.all)
        return

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    main()
