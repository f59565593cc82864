"""Environment loading and validation.

Goals:
- Ensure `.env` is loaded at runtime (not just examples).
- Fail fast with clear guidance if `.env` is missing or incomplete.
- Never print secrets.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class EnvStatus:
    env_path: str
    env_example_path: str
    loaded: bool


REQUIRED_ENV_VARS = [
    "RELAYBOT_MODE",
    "RELAYBOT_CHAIN_ID",
    "RELAYBOT_FORWARDER_ADDRESS",
    "RELAYBOT_FEE_COLLECTOR_ADDRESS",
]

# Live mode cannot settle anything without these
REQUIRED_LIVE_VARS = [
    "RELAYBOT_RPC_URL",
    "RELAYBOT_RELAYER_PRIVATE_KEY",
]

# Recommended vars for live mode (warnings if missing)
RECOMMENDED_LIVE_VARS = [
    "RELAYBOT_PRICE_API_URL",
    "RELAYBOT_PRICE_FALLBACK_API_URL",
]


def load_env_or_exit(env_path: str = ".env", env_example_path: str = "env.example") -> EnvStatus:
    """Load `.env` and validate required keys exist.

    This should be called at process start (CLI entrypoint, API startup).
    """
    if not os.path.exists(env_path):
        _print_env_missing(env_path=env_path, env_example_path=env_example_path)
        raise SystemExit(2)

    loaded = load_dotenv(dotenv_path=env_path, override=False)

    missing = [k for k in REQUIRED_ENV_VARS if not os.environ.get(k)]
    if missing:
        _print_env_incomplete(missing, env_path=env_path)
        raise SystemExit(2)

    mode = os.environ.get("RELAYBOT_MODE", "").lower()
    if mode == "live":
        missing_live = [k for k in REQUIRED_LIVE_VARS if not os.environ.get(k)]
        if missing_live:
            _print_env_incomplete(missing_live, env_path=env_path)
            raise SystemExit(2)
        missing_recommended = [k for k in RECOMMENDED_LIVE_VARS if not os.environ.get(k)]
        if missing_recommended:
            _print_recommended_warning(missing_recommended)

    return EnvStatus(env_path=env_path, env_example_path=env_example_path, loaded=loaded)


def _print_env_missing(*, env_path: str, env_example_path: str) -> None:
    sys.stderr.write("\nERROR: Missing .env file.\n")
    if os.path.exists(env_example_path):
        sys.stderr.write(
            f"Found `{env_example_path}`. Create your `.env` by copying it:\n\n"
            f"  cp {env_example_path} {env_path}\n"
            f"  # then edit {env_path}\n\n"
        )
    else:
        sys.stderr.write(
            "No `env.example` found.\n"
            "Create a `.env` file with the required variables (see README).\n\n"
        )
    sys.stderr.write("Required vars:\n")
    for k in REQUIRED_ENV_VARS:
        sys.stderr.write(f"  - {k}\n")
    sys.stderr.write("\n")


def _print_env_incomplete(missing: list[str], *, env_path: str) -> None:
    sys.stderr.write("\nERROR: .env is missing required variables.\n")
    sys.stderr.write(f"File: {env_path}\n")
    sys.stderr.write("Missing:\n")
    for k in missing:
        sys.stderr.write(f"  - {k}\n")
    sys.stderr.write("\nFix: edit your .env and set the missing keys (see README).\n\n")


def _print_recommended_warning(missing: list[str]) -> None:
    """Print warning for missing recommended vars in live mode."""
    sys.stderr.write("\nWARNING: Missing recommended live mode configuration.\n")
    sys.stderr.write("Missing:\n")
    for k in missing:
        sys.stderr.write(f"  - {k}\n")
    sys.stderr.write(
        "\nWithout a price API, only assets with a static price in the assets file\n"
        "can be priced.\n\n"
    )
