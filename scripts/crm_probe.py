#!/usr/bin/env python3
"""
CRM connection probe.

Exchanges a one-time authorization code and checks that the CRM has the
PHONE / EMAIL contact fields the gateway writes to. Prints a JSON report.

NOTE: this CONSUMES the code. Get another one before starting the gateway.

  env: AMO_URL, CLIENT_ID, CLIENT_SECRET, REDIRECT_URL (or a .env file)
  cmd: python scripts/crm_probe.py <authorization_code>
"""
import asyncio
import json
import sys
from typing import Any, Dict

from crm_gateway.config import settings
from crm_gateway.credentials import CredentialManager, CredentialStore
from crm_gateway.crm_client import CrmClient
from crm_gateway.errors import AuthExchangeError, CrmRequestError
from crm_gateway.reconcile import FIELD_CODES, ReconciliationService


async def probe(code: str, client: CrmClient) -> Dict[str, Any]:
    manager = CredentialManager(
        client,
        client.store,
        client_id=settings.CLIENT_ID,
        client_secret=settings.CLIENT_SECRET,
        redirect_uri=settings.REDIRECT_URL,
        margin_s=settings.TOKEN_REFRESH_MARGIN_S,
    )
    credential = await manager.authenticate(code)
    fields = await ReconciliationService(client).contact_fields()
    return {
        "authenticated": True,
        "token_type": credential.token_type,
        "expires_in": credential.expires_in,
        "fields": {c: (fields[c].id if c in fields else None) for c in FIELD_CODES},
    }


async def _run(code: str) -> int:
    async with CrmClient(settings.AMO_URL, CredentialStore()) as client:
        try:
            report = await probe(code, client)
        except AuthExchangeError as e:
            print(f"❌ Code exchange failed: {e}")
            return 2
        except CrmRequestError as e:
            print(f"❌ Custom field lookup failed: {e}")
            return 3
    print(json.dumps(report, indent=2))
    missing = [c for c, field_id in report["fields"].items() if field_id is None]
    if missing:
        print(f"⚠️  Not configured in the CRM (values will be skipped): {', '.join(missing)}")
    return 0


def main():
    if len(sys.argv) != 2 or not sys.argv[1].strip():
        print(__doc__)
        sys.exit(1)
    sys.exit(asyncio.run(_run(sys.argv[1].strip())))


if __name__ == "__main__":
    main()
