#!/usr/bin/env python3
"""Script to generate a WireGuard keypair."""

import os
import sys
import argparse
from pathlib import Path

from vpntunnel.keys import generate_keypair, public_key_from_private, validate_key


def write_keypair(key_file: str):
    """Generate a keypair and write it next to key_file."""
    try:
        print("Generating WireGuard keypair...")
        keys = generate_keypair()

        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(keys.private_key + "\n")

        public_key_file = f"{key_file}.pub"
        with open(public_key_file, 'w') as f:
            f.write(keys.public_key + "\n")

        os.chmod(key_file, 0o600)
        os.chmod(public_key_file, 0o644)

        print(f"Private key saved to: {key_file}")
        print(f"Public key saved to: {public_key_file}")
        print(f"Public key: {keys.public_key}")

        return True

    except Exception as e:
        print(f"Error generating keypair: {e}", file=sys.stderr)
        return False


def show_public_key(key_file: str):
    """Print the public key of an existing private key file."""
    private_key = Path(key_file).read_text().strip()
    if not validate_key(private_key):
        print(f"{key_file} does not contain a valid WireGuard key", file=sys.stderr)
        return False
    print(public_key_from_private(private_key))
    return True


def main():
    """Main function."""
    parser = argparse.ArgumentParser(description="Generate a WireGuard keypair")
    parser.add_argument(
        '--key-file',
        default='wireguard.key',
        help='Output file for private key (default: wireguard.key)'
    )
    parser.add_argument(
        '--public-only',
        action='store_true',
        help='Print the public key of an existing key file'
    )
    parser.add_argument(
        '--force',
        action='store_true',
        help='Overwrite existing key file'
    )

    args = parser.parse_args()

    if args.public_only:
        sys.exit(0 if show_public_key(args.key_file) else 1)

    if Path(args.key_file).exists() and not args.force:
        print(f"Key file {args.key_file} already exists. Use --force to overwrite.")
        sys.exit(1)

    success = write_keypair(args.key_file)

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
