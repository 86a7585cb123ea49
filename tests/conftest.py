# tests/conftest.py
"""Shared test fixtures.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from collections.abc import Iterator

import pytest
from hypothesis import Phase, Verbosity, settings

from imigrate.core.security import CredentialVault
from imigrate.core.store import MigrationDB, Persistence
from tests.fixtures.environments import DEST_ENV, SOURCE_ENV


@pytest.fixture
def db() -> Iterator[MigrationDB]:
    database = MigrationDB.in_memory()
    yield database
    database.close()


@pytest.fixture
def persistence(db: MigrationDB) -> Persistence:
    """Store with both test environments already registered."""
    store = Persistence(db)
    store.upsert_environment(SOURCE_ENV)
    store.upsert_environment(DEST_ENV)
    return store


@pytest.fixture
def vault() -> CredentialVault:
    """Vault with passwords resident for both test environments."""
    credentials = CredentialVault()
    credentials.set_password(SOURCE_ENV.id, "source-secret")
    credentials.set_password(DEST_ENV.id, "dest-secret")
    return credentials


# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # PBKDF2 makes single examples slow
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
