#!/usr/bin/env python3
"""Health check script to verify BudgetBakers login and document store access.

Run with: uv run scripts/health_check.py

Requires environment variables:
  BUDGETBAKERS_EMAIL, BUDGETBAKERS_PASSWORD
Optional:
  BUDGETBAKERS_API_URL, BUDGETBAKERS_LOCALE, BUDGETBAKERS_REQUEST_TIMEOUT
"""

import asyncio
import sys
from pathlib import Path

from budgetbakers_mcp.config import Settings, load_env_file
from budgetbakers_mcp.errors import BudgetBakersError
from budgetbakers_mcp.logging_config import configure_logging
from budgetbakers_mcp.service import BudgetBakersService


async def health_check() -> bool:
    """Test the login handshake and a read against each document kind."""
    settings = Settings.from_env()
    if not settings.email or not settings.password:
        print("❌ BUDGETBAKERS_EMAIL and BUDGETBAKERS_PASSWORD environment variables required")
        print("   Set them in .env file or export them")
        return False

    print("Testing BudgetBakers connectivity...")
    print(f"  Email: {settings.email}")
    print(f"  API:   {settings.api_url}")

    service = BudgetBakersService(settings)
    try:
        # Test 1: Login
        print("\n1. Testing authentication...")
        try:
            cookies = await service.login(settings.email, settings.password)
            print(f"   ✅ Login successful ({len(cookies)} cookies)")
            cached = service.provider.cached
            if cached is not None:
                print(f"   ✅ Session database: {cached.descriptor.db_name}")
        except BudgetBakersError as e:
            print(f"   ❌ Login failed: {type(e).__name__}: {e}")
            return False

        # Tests 2-5: one listing per kind
        for step, (name, repo) in enumerate(service.repositories.items(), start=2):
            print(f"\n{step}. Testing {name} listing...")
            try:
                documents = await repo.list()
                print(f"   ✅ Got {len(documents)} {name} documents")
            except BudgetBakersError as e:
                print(f"   ❌ Listing {name} failed: {type(e).__name__}: {e}")
                return False
    finally:
        await service.aclose()

    print("\n" + "=" * 50)
    print("✅ All health checks passed! BudgetBakers is reachable.")
    print("=" * 50)
    return True


def main() -> int:
    """Run health check and return exit code."""
    env_file = Path(__file__).parent.parent / ".env"
    if env_file.exists():
        print(f"Loading credentials from {env_file}")
        load_env_file(env_file)
    configure_logging("WARNING")

    success = asyncio.run(health_check())
    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
