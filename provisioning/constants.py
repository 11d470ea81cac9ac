from pathlib import Path

import provisioning

#
# Filesystem
#

PROVISIONING_DIR = Path(provisioning.__file__).parent
PLANS_DIR = PROVISIONING_DIR / "plans"
ARTIFACTS_DIR = PROVISIONING_DIR / "artifacts"

LEDGER_SUFFIX = ".ledger.json"
LOCK_SUFFIX = ".lock"
RUN_LOCK_SUFFIX = ".run.lock"

#
# Plan variables
#

VARIABLE_PREFIX = "$"
DEPLOYER_INDICATOR = "deployer"

#
# Orchestration defaults
#

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKEND_TIMEOUT = 300  # seconds
DEFAULT_BACKOFF_BASE = 1.0  # seconds
DEFAULT_BACKOFF_FACTOR = 2.0

#
# Contracts
#

PROXY_CONTRACT_NAME = "TransparentUpgradeableProxy"
UUPS_PROXY_CONTRACT_NAME = "ERC1967Proxy"
DEFAULT_INITIALIZER = "initialize"

# Substrings of provider errors caused by nonce/sequencing contention
NONCE_CONTENTION_MARKERS = (
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "already known",
)
