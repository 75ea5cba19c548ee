"""
Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT in sys.path:
    sys.path.remove(ROOT)
sys.path.insert(0, ROOT)

from tests._env import ensure_test_env

ensure_test_env()


@pytest.fixture(autouse=True)
def _reset_service_singletons():
    # Lazily built singletons must not leak state between tests.
    from middleware import dependencies

    dependencies._token_verifier = None
    dependencies._secret_service = None
    yield
    dependencies._token_verifier = None
    dependencies._secret_service = None
