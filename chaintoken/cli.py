#!/usr/bin/env python3
"""
chaintoken Command Line Interface

Usage:
    chaintoken keygen [--output <file>]
    chaintoken create --private-key <hex> (--code <datalog> | --file <file>) [--root-key-id N]
    chaintoken attenuate --token <file> --public-key <hex> (--code <datalog> | --file <file>)
    chaintoken seal --token <file> --public-key <hex>
    chaintoken inspect --token <file> --public-key <hex>
    chaintoken authorize --token <file> --public-key <hex> (--code <datalog> | --file <file>)

Tokens are read from and written as URL-safe base64 text; "-" means
stdin or stdout.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

logger = logging.getLogger(__name__)


def load_text(path: str) -> str:
    """Load text from a file, or from stdin for "-"."""
    if path == "-":
        return sys.stdin.read()
    with open(path, 'r') as f:
        return f.read()


def save_text(text: str, path: Optional[str]):
    """Write text to a file, or to stdout when no path (or "-") is given."""
    if not path or path == "-":
        print(text)
        return
    with open(path, 'w') as f:
        f.write(text + "\n")
    print(f"Saved to: {path}", file=sys.stderr)


def _read_code(args) -> str:
    if args.code is not None:
        return args.code
    if args.file:
        return load_text(args.file)
    return ""


def _load_token(args):
    from chaintoken import Biscuit, PublicKey

    root = PublicKey.from_hex(args.public_key)
    return Biscuit.from_base64(load_text(args.token).strip(), root)


def cmd_keygen(args):
    """Generate an Ed25519 root key pair."""
    from chaintoken import KeyPair

    keypair = KeyPair()
    data = {
        "private_key": keypair.private_key.to_hex(),
        "public_key": keypair.public_key.to_hex(),
    }
    save_text(json.dumps(data, indent=2), args.output)
    print(f"Public key fingerprint: {keypair.public_key.fingerprint}", file=sys.stderr)
    return 0


def cmd_create(args):
    """Create a token with an authority block."""
    from chaintoken import BiscuitBuilder, KeyPair, PrivateKey

    root = KeyPair.from_existing(PrivateKey.from_hex(args.private_key))
    builder = BiscuitBuilder()
    builder.add_code(_read_code(args))
    if args.context:
        builder.set_context(args.context)
    token = builder.build(root, root_key_id=args.root_key_id)
    save_text(token.to_base64(), args.output)
    return 0


def cmd_attenuate(args):
    """Append a block to a token."""
    token = _load_token(args)
    block = token.create_block()
    block.add_code(_read_code(args))
    if args.context:
        block.set_context(args.context)
    save_text(token.append(block).to_base64(), args.output)
    return 0


def cmd_seal(args):
    """Seal a token against further attenuation."""
    token = _load_token(args)
    save_text(token.seal().to_base64(), args.output)
    return 0


def cmd_inspect(args):
    """Print the blocks of a verified token."""
    token = _load_token(args)
    revocation_ids = token.revocation_ids()
    blocks = []
    for i in range(token.block_count()):
        entry = {
            "index": i,
            "source": token.block_source(i),
            "revocation_id": revocation_ids[i],
        }
        context = token.block_context(i)
        if context is not None:
            entry["context"] = context
        extensions = token.block_extensions(i)
        if extensions:
            entry["extensions"] = {str(tag): data.hex() for tag, data in extensions.items()}
        blocks.append(entry)
    report = {
        "root_key_fingerprint": token.root_key_fingerprint,
        "root_key_id": token.root_key_id,
        "sealed": token.sealed,
        "blocks": blocks,
    }
    print(json.dumps(report, indent=2))
    return 0


def cmd_authorize(args):
    """Authorize a token against local facts and policies."""
    from chaintoken import AuthorizationError

    token = _load_token(args)
    authorizer = token.authorizer()
    authorizer.add_code(_read_code(args))
    if args.time:
        authorizer.set_time()

    try:
        index = authorizer.authorize()
    except AuthorizationError as e:
        print(f"✗ DENIED: {e}", file=sys.stderr)
        return 1
    print(f"✓ ALLOWED by policy {index}")
    return 0


def _add_code_arguments(parser: argparse.ArgumentParser):
    group = parser.add_mutually_exclusive_group()
    group.add_argument("-c", "--code", help="Datalog source")
    group.add_argument("-f", "--file", help="File containing Datalog source")


def _add_token_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("-t", "--token", required=True, help="Token file (base64), or - for stdin")
    parser.add_argument("-p", "--public-key", required=True, help="Root public key (hex)")


def build_parser() -> argparse.ArgumentParser:
    from chaintoken.logging_config import LOG_LEVELS

    parser = argparse.ArgumentParser(
        prog="chaintoken",
        description="chaintoken authorization token CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  chaintoken keygen -o root.json
  chaintoken create -k <private-hex> -c 'user("alice"); right("file1", "read");' -o token.b64
  chaintoken attenuate -t token.b64 -p <public-hex> -c 'check if operation("read");'
  chaintoken authorize -t token.b64 -p <public-hex> -f authorizer.dl
        """
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Log level (default: CHAINTOKEN_LOG_LEVEL or WARNING)"
    )
    parser.add_argument("--log-json", action="store_true", default=None, help="JSON log output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Generate root key pair")
    keygen_parser.add_argument("-o", "--output", help="Output file for key pair JSON")

    # create
    create_parser = subparsers.add_parser("create", help="Create a token")
    create_parser.add_argument("-k", "--private-key", required=True, help="Root private key (hex)")
    create_parser.add_argument("-i", "--root-key-id", type=int, help="Root key identifier")
    create_parser.add_argument("--context", help="Context string for the authority block")
    create_parser.add_argument("-o", "--output", help="Output file for the token")
    _add_code_arguments(create_parser)

    # attenuate
    attenuate_parser = subparsers.add_parser("attenuate", help="Append a block to a token")
    _add_token_arguments(attenuate_parser)
    attenuate_parser.add_argument("--context", help="Context string for the new block")
    attenuate_parser.add_argument("-o", "--output", help="Output file for the token")
    _add_code_arguments(attenuate_parser)

    # seal
    seal_parser = subparsers.add_parser("seal", help="Seal a token")
    _add_token_arguments(seal_parser)
    seal_parser.add_argument("-o", "--output", help="Output file for the token")

    # inspect
    inspect_parser = subparsers.add_parser("inspect", help="Show token blocks")
    _add_token_arguments(inspect_parser)

    # authorize
    authorize_parser = subparsers.add_parser("authorize", help="Authorize a token")
    _add_token_arguments(authorize_parser)
    authorize_parser.add_argument("--time", action="store_true", help="Add time(<now>) fact")
    _add_code_arguments(authorize_parser)

    return parser


COMMANDS = {
    "keygen": cmd_keygen,
    "create": cmd_create,
    "attenuate": cmd_attenuate,
    "seal": cmd_seal,
    "inspect": cmd_inspect,
    "authorize": cmd_authorize,
}


def main(argv: Optional[List[str]] = None) -> int:
    from chaintoken import ChainTokenError
    from chaintoken.logging_config import configure_logging

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        configure_logging(level=args.log_level, json_format=args.log_json)
    except ValueError as e:
        parser.error(str(e))

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args)
    except (ChainTokenError, ValueError, OSError) as e:
        logger.debug("command %s failed", args.command, exc_info=True)
        print(f"✗ {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
