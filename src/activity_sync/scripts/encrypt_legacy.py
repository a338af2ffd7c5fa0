"""
Encrypt legacy plaintext credentials in place.

Usage:
    python -m activity_sync encrypt-legacy
    python -m activity_sync.scripts.encrypt_legacy --dry-run

Rows that are already encrypted (current or previous layout) are skipped, so
the script is safe to re-run. CREDENTIAL_ENCRYPTION_KEY must be set.
"""
import argparse
import logging
import sys

from sqlmodel import Session, select

from activity_sync.db.engine import get_engine
from activity_sync.errors import EncryptionKeyError
from activity_sync.models.credential import Credential
from activity_sync.vault.vault import CredentialVault, encrypt_legacy_rows

logger = logging.getLogger(__name__)


def count_plaintext(session: Session, vault: CredentialVault) -> int:
    rows = session.exec(select(Credential)).all()
    return sum(1 for c in rows if not vault.is_encrypted(c.value))


def run_encrypt_legacy(dry_run: bool = False) -> int:
    """Returns the number of rows that were (or would be) encrypted."""
    vault = CredentialVault()
    with Session(get_engine()) as session:
        if dry_run:
            pending = count_plaintext(session, vault)
            logger.info("%d plaintext credential(s) would be encrypted", pending)
            return pending
        return encrypt_legacy_rows(session, vault)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Encrypt legacy plaintext credentials")
    parser.add_argument("--dry-run", action="store_true", help="Only count plaintext rows")
    args = parser.parse_args(argv)
    try:
        run_encrypt_legacy(dry_run=args.dry_run)
    except EncryptionKeyError as exc:
        logger.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    main()
