"""Command line entry point.

Usage:
    signerkit available
    signerkit pubkey LOCAL --curve secp256k1 --coin-type 60
    signerkit sign LOCAL 0xdeadbeef --curve secp256k1 --hash keccak256 --format rsv --coin-type 60
"""

import argparse
import asyncio
import json
import logging
import sys

from signerkit.config import get_settings
from signerkit.service import WalletService
from signerkit.signing.base import Curve, HashFunction, SignatureFormat, SigningError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="signerkit", description="Provider-agnostic transaction signer")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("available", help="List signers whose configuration is complete")

    def add_spec_arguments(command: argparse.ArgumentParser) -> None:
        command.add_argument("signer", help="Signer type (LOCAL, TURNKEY, DFNS, SODOT)")
        command.add_argument("--curve", choices=[c.value for c in Curve], default=Curve.SECP256K1.value)
        command.add_argument("--hash", choices=[h.value for h in HashFunction], default=HashFunction.SHA256.value)
        command.add_argument(
            "--format", choices=[f.value for f in SignatureFormat], default=SignatureFormat.RSV.value
        )
        command.add_argument("--coin-type", default="60")

    pubkey = commands.add_parser("pubkey", help="Print the public key for a signer spec")
    add_spec_arguments(pubkey)

    sign = commands.add_parser("sign", help="Sign a hex payload")
    add_spec_arguments(sign)
    sign.add_argument("payload", help="Hex-encoded payload")

    return parser


def spec_from_args(args: argparse.Namespace) -> dict:
    return {
        "curve": args.curve,
        "hashFunction": args.hash,
        "signatureFormat": args.format,
        "coinType": args.coin_type,
    }


async def run(args: argparse.Namespace) -> str:
    service = WalletService()

    if args.command == "available":
        return json.dumps(service.list_available_signers())

    service.connect_wallet(args.signer)
    signer = service.session.current_backend()
    try:
        if args.command == "pubkey":
            return await service.get_pubkey(spec_from_args(args))
        return await service.sign_transaction(args.payload, spec_from_args(args))
    finally:
        await signer.close()


def main():
    """Main entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    args = build_parser().parse_args()
    try:
        print(asyncio.run(run(args)))
    except SigningError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
