#!/usr/bin/env python3
"""
chaintoken Example - Delegating Read Access to a Build Server

An operator issues a token for a repository service, a CI system narrows
it to read-only access that expires, and the storage service verifies
and authorizes requests offline with nothing but the root public key.

Run with: python examples/delegation_example.py
"""

import json
from datetime import datetime, timedelta, timezone

from chaintoken import (
    AuthorizationError,
    Biscuit,
    BiscuitBuilder,
    BiscuitValidationError,
    KeyPair,
)


STORAGE_POLICIES = """
    allow if user($u), right($r, $op), resource($r), operation($op);
    deny if true;
"""


def issue_token(root: KeyPair) -> Biscuit:
    """
    Operator: sign the authority block.

    In production the root private key lives in an HSM or KMS and only
    its public half is distributed to services.
    """
    builder = BiscuitBuilder()
    builder.add_code("""
        user("deploy-bot");
        right("repo/payments", "read");
        right("repo/payments", "write");
        right("repo/ledger", "read");
    """)
    builder.set_context("issued by platform operator")
    return builder.build(root, root_key_id=1)


def delegate_to_ci(token: Biscuit, expires_at: datetime) -> Biscuit:
    """CI: attenuate to read-only access on one repository, with an expiry."""
    block = token.create_block()
    block.add_code(f"""
        check if operation("read");
        check if resource($r), $r.starts_with("repo/payments");
        check if time($t), $t < {expires_at.strftime('%Y-%m-%dT%H:%M:%SZ')};
    """)
    block.set_context("delegated to build server")
    return token.append(block).seal()


def handle_request(encoded: str, root_keys: dict, resource: str, operation: str) -> bool:
    """Storage service: verify the token and decide one request."""
    try:
        token = Biscuit.from_base64(encoded, lambda key_id: root_keys[key_id])
    except BiscuitValidationError as e:
        print(f"  ✗ REJECTED: {e}")
        return False

    authorizer = token.authorizer()
    authorizer.add_fact(f'resource("{resource}")')
    authorizer.add_fact(f'operation("{operation}")')
    authorizer.set_time()
    authorizer.add_code(STORAGE_POLICIES)

    try:
        index = authorizer.authorize()
    except AuthorizationError as e:
        print(f"  ✗ DENIED {operation} {resource}")
        print(f"    {e}")
        return False
    print(f"  ✓ ALLOWED {operation} {resource} (policy {index})")
    return True


def main():
    print("=" * 70)
    print("chaintoken Delegation - Example")
    print("=" * 70)

    # =========================================================================
    # SETUP: Root key and token issuance
    # =========================================================================

    print("\n[SETUP] Generating root key...")
    root = KeyPair()
    root_keys = {1: root.public_key}
    print(f"  Root key fingerprint: {root.public_key.fingerprint}")

    token = issue_token(root)
    print("\n[ISSUE] Authority block:")
    for line in token.block_source(0).splitlines():
        print(f"    {line}")

    # =========================================================================
    # ATTENUATION: CI narrows the token without contacting the operator
    # =========================================================================

    expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
    ci_token = delegate_to_ci(token, expires_at)
    encoded = ci_token.to_base64()

    print("\n[ATTENUATE] Block 1:")
    for line in ci_token.block_source(1).splitlines():
        print(f"    {line}")
    print(f"  Sealed: {ci_token.sealed}")
    print(f"  Token size: {len(encoded)} characters")

    # =========================================================================
    # AUTHORIZATION: Storage service decides requests offline
    # =========================================================================

    print("\n" + "-" * 70)
    print("SCENARIO 1: Read within delegated scope")
    print("-" * 70)
    handle_request(encoded, root_keys, "repo/payments", "read")

    print("\n" + "-" * 70)
    print("SCENARIO 2: Write with a read-only token (DENIED)")
    print("-" * 70)
    handle_request(encoded, root_keys, "repo/payments", "write")

    print("\n" + "-" * 70)
    print("SCENARIO 3: Read outside the delegated repository (DENIED)")
    print("-" * 70)
    handle_request(encoded, root_keys, "repo/ledger", "read")

    print("\n" + "-" * 70)
    print("SCENARIO 4: Token signed by an unknown root (REJECTED)")
    print("-" * 70)
    handle_request(delegate_to_ci(issue_token(KeyPair()), expires_at).to_base64(),
                   {1: KeyPair().public_key}, "repo/payments", "read")

    # =========================================================================
    # REVOCATION IDS
    # =========================================================================

    print("\n" + "-" * 70)
    print("REVOCATION IDS")
    print("-" * 70)
    print(json.dumps(
        {f"block_{i}": rid[:32] + "..." for i, rid in enumerate(ci_token.revocation_ids())},
        indent=2,
    ))

    print("\n" + "=" * 70)
    print("Example Complete")
    print("=" * 70)


if __name__ == "__main__":
    main()
