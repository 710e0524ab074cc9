#!/usr/bin/env python3
"""
Generate an ADMIN_TOKEN for the dispatch API.

Usage:
    python scripts/generate_token.py              # Generate default 32-byte token
    python scripts/generate_token.py 48           # Generate 48-byte token
    python scripts/generate_token.py --env        # Output as .env format

Example output:
    ADMIN_TOKEN=Yx8kL2mN9pQ4rS6tU0vW3xZ5aB7cD1eF
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.transport.security import generate_secure_token, validate_token_strength  # noqa: E402


def main():
    length = 32
    env_format = False

    for arg in sys.argv[1:]:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    # token_urlsafe output can miss a digit or a case; draw again until it passes the startup check
    token = generate_secure_token(length)
    while validate_token_strength(token):
        token = generate_secure_token(length)

    print(f"ADMIN_TOKEN={token}" if env_format else token)


if __name__ == "__main__":
    main()
