"""Constants used in the project."""

from enum import Enum

VERSION = "0.4.0"


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    EXIT_WARNINGS = 3
    CONFIGURATION_ERROR = 4
    INSTALL_ERROR = 5
    NOT_FOUND = 7
    UNTRUSTED = 19


class TrustPolicies(Enum):
    """Security policies applied to downloaded artifacts."""

    NO_SECURITY = "NoSecurity"
    LOW_SECURITY = "LowSecurity"
    MEDIUM_SECURITY = "MediumSecurity"
    HIGH_SECURITY = "HighSecurity"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    SELF_NAME = "depfetch"
    DEFAULT_PLATFORM = "any"
    ARTIFACT_EXTENSION = ".pkg"

    # Use the incremental API when fewer than this many specs/names are known
    REQUEST_LIMIT = 500
    # Names sent per incremental API request
    REQUEST_SIZE = 50

    BULK_INDEX_PATH = "api/v1/specs.json"
    DEPENDENCY_API_PATH = "api/v1/dependencies"
    DOWNLOAD_PATH = "packages/"

    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_USER_AGENT = f"depfetch/{VERSION}"
    DOWNLOAD_CHUNK_SIZE = 64 * 1024

    LOCK_HEADER = "PACKAGES"
    CONFIG_FILE = "depfetch.yml"
    ENV_PREFIX = "DEPFETCH_"
    ENV_CREDENTIALS_PREFIX = "DEPFETCH_CREDENTIALS__"
    LOG_FORMAT = "[%(levelname)s] %(message)s"

    # Artifact members
    METADATA_MEMBER = "metadata.yaml"
    DATA_MEMBER = "data.tar.gz"
    CHECKSUMS_MEMBER = "checksums.yaml"

    # Installed layout
    SPECIFICATIONS_DIR = "specifications"
    PACKAGES_DIR = "packages"
    CACHE_DIR = "cache"
    BIN_DIR = "bin"
    REPOSITORY_SUBDIRECTORIES = (
        "cache",
        "packages",
        "specifications",
        "extensions",
        "doc",
        "build_info",
    )

    DEFAULT_APP_CACHE = "vendor/cache"
    DEFAULT_HOME = "~/.depfetch"
    SYSTEM_INSTALL_PATH = "/usr/local/lib/depfetch"
    SYSTEM_BIN_DIR = "/usr/local/bin"
    SUPPORTED_TRUST_POLICIES = [policy.value for policy in TrustPolicies]
