#!/usr/bin/env python3
"""Generate the RS256 key pair used to sign access, refresh and reset tokens.

Usage:
    python scripts/generate_keys.py --out-dir /srv/zajel/keys

    # Then point the service at the files:
    JWT_PRIVATE_KEY_PATH=/srv/zajel/keys/private.pem
    JWT_PUBLIC_KEY_PATH=/srv/zajel/keys/public.pem

Environment Variables:
    SHARED_FS_ROOT: default parent of the output directory (keys/ under it)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def write_key_pair(out_dir: Path, key_size: int = 2048, force: bool = False) -> dict:
    """Write private.pem (0600) and public.pem (0644) into ``out_dir``.

    Returns:
        dict with both paths and status ('created' or 'exists')
    """
    from zajel_auth.service.tokens import atomic_write, generate_key_pair, private_pem

    private_path = out_dir / "private.pem"
    public_path = out_dir / "public.pem"
    if private_path.exists() and not force:
        return {"private": str(private_path), "public": str(public_path), "status": "exists"}

    keys = generate_key_pair(key_size)
    out_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(out_dir, 0o700)
    atomic_write(private_path, private_pem(keys), 0o600)
    atomic_write(public_path, keys.public_pem, 0o644)
    return {"private": str(private_path), "public": str(public_path), "status": "created"}


def main():
    default_root = Path(os.environ.get("SHARED_FS_ROOT", "/srv/zajel"))
    parser = argparse.ArgumentParser(
        description="Generate the Zajel auth token signing keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=default_root / "keys",
        help="Directory for private.pem and public.pem (default: $SHARED_FS_ROOT/keys)",
    )
    parser.add_argument(
        "--key-size",
        type=int,
        default=2048,
        choices=(2048, 3072, 4096),
        help="RSA modulus size in bits",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing key pair (invalidates every issued token)",
    )

    args = parser.parse_args()

    try:
        result = write_key_pair(args.out_dir, args.key_size, args.force)
    except OSError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "exists":
        print(f"Key pair already present at {result['private']}; use --force to replace it.")
        return
    print("Signing keys written:")
    print(f"  Private: {result['private']}")
    print(f"  Public:  {result['public']}")


if __name__ == "__main__":
    main()
