from __future__ import annotations

import argparse
import asyncio
import sys

from agriqcert.core.errors import AgriQCertError
from agriqcert.core.logging import configure_logging
from agriqcert.domain.credentials import REVOCATION_REASONS
from agriqcert.services.container import build_container
from agriqcert.services.revocation import RevocationActor


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Revoke an issued certificate as an administrator")
    parser.add_argument("certificate_id", help="Certificate identifier")
    parser.add_argument("--reason", required=True, choices=REVOCATION_REASONS)
    parser.add_argument("--actor", required=True, help="User id recorded as the revoker")
    return parser


async def _revoke(args: argparse.Namespace) -> int:
    configure_logging()
    container = build_container()
    certificate = await container.revocation.revoke(
        args.certificate_id,
        reason=args.reason,
        actor=RevocationActor(user_id=args.actor, role="admin", user_agent="revoke_certificate"),
    )
    print(f"revoked certificate_id={certificate.id} batch_id={certificate.batch_id}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_revoke(args))
    except AgriQCertError as exc:
        print(f"revoke_certificate failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
