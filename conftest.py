"""
Root conftest for all tests.

Sets a valid production configuration before any test module is collected,
because importing ``apps.web_gateway.main`` builds the application (and its
settings) at import time. Individual tests override variables with
monkeypatch and rebuild through ``create_app()``.

IMPORTANT: This file must exist at the project root to be loaded first.
"""

import os

BASE_ENVIRONMENT = {
    "SECURITY_PROFILE": "production",
    "UPSTREAM_API_BASE_URL": "https://api.example.com",
    "ALLOWED_FETCH_DOMAINS": "api.example.com",
    "LOG_LEVEL": "INFO",
}

for _name, _value in BASE_ENVIRONMENT.items():
    os.environ.setdefault(_name, _value)
