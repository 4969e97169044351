#!/usr/bin/env python
"""
Seed script: creates a demo organization, API key and webhook destination.

Usage:
    python seed.py [destination_url]
"""
import sys

from relay.db import crud, schemas
from relay.db.session import SessionLocal


def main() -> None:
    url = sys.argv[1] if len(sys.argv) > 1 else "https://hooks.example.com/webhook"
    db = SessionLocal()
    try:
        organization = crud.create_organization(
            db, schemas.OrganizationCreate(name="Demo Corp")
        )
        api_key = crud.issue_api_key(db, organization.id)
        destination = crud.upsert_destination(
            db, organization.id, schemas.DestinationCreate(url=url)
        )
        print("=== Demo Organization Seeded ===")
        print(f"Organization : {organization.name} (id {organization.id})")
        print(f"Ingress URL  : https://hooks.local/in/{organization.token}")
        print(f"Destination  : {destination.url}")
        print(f"Signing key  : {destination.secret}")
        print(f"API KEY      : {api_key}  (store this securely!)")
    finally:
        db.close()


if __name__ == "__main__":
    main()
