"""Provision an API key for a marketplace user, support agent or admin."""
from __future__ import annotations

import argparse
from datetime import timedelta

from gametrust.db import init_engine, session_scope
from gametrust.models.api_key import ApiKey, ApiScope
from gametrust.utils.apikey import gen_key
from gametrust.utils.time import utcnow


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("subject", help="User id the key speaks for (buyer/seller id, agent id, ...)")
    parser.add_argument("--scope", choices=[scope.value for scope in ApiScope], default=ApiScope.user.value)
    parser.add_argument("--name", help="Unique key name (defaults to '<scope>-<subject>')")
    parser.add_argument("--expires-days", type=int, default=None)
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    init_engine()

    raw_token, prefix, key_hash = gen_key()
    expires_at = utcnow() + timedelta(days=args.expires_days) if args.expires_days else None
    with session_scope() as db:
        api_key = ApiKey(
            name=args.name or f"{args.scope}-{args.subject}",
            prefix=prefix,
            key_hash=key_hash,
            subject=args.subject,
            scope=ApiScope(args.scope),
            is_active=True,
            expires_at=expires_at,
        )
        db.add(api_key)
        db.commit()
        db.refresh(api_key)

        print("==========================================")
        print(f"API key created for {api_key.subject} ({api_key.scope.value})")
        print("Use this key in your Authorization header:")
        print(f"    Authorization: Bearer {raw_token}")
        print(f"(DB id: {api_key.id}, prefix: {api_key.prefix})")
        print("==========================================")


if __name__ == "__main__":
    main()
