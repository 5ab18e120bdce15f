"""Script to mint a development bearer token signed with LOCAL_AUTH_SECRET."""

import argparse
import sys
from pathlib import Path
from uuid import uuid4

# Add the parent directory to the path so we can import from kbchat
sys.path.insert(0, str(Path(__file__).parent.parent))

from kbchat.utils.local_tokens import create_local_token


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--email", default="admin@admin.com")
    parser.add_argument("--user-id", default=None, help="Defaults to a fresh UUID")
    parser.add_argument("--role", choices=["user", "admin"], default="user")
    parser.add_argument("--expires-in", type=int, default=None, help="Lifetime in seconds")
    args = parser.parse_args()

    token = create_local_token(
        user_id=args.user_id or str(uuid4()),
        email=args.email,
        role=args.role,
        expires_in=args.expires_in,
    )
    print(token)


if __name__ == "__main__":
    main()
