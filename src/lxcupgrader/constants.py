"""Fixed paths, commands and defaults shared across services."""

from lxcupgrader.models import ReleaseUpgrade

DEBIAN_13 = ReleaseUpgrade(
    prior_major=12,
    goal_major=13,
    prior_codename="bookworm",
    goal_codename="trixie",
)

REQUIRED_COMMANDS = ("pvesh", "pct")

DEFAULT_CONFIG_FILE = ".lxcupgrader.yml"
DEFAULT_LOG_TEMPLATE = "/tmp/lxc-upgrade-{timestamp}.log"
DEFAULT_PVE_ROOT = "/etc/pve"
DEFAULT_SSH_USER = "root"
DEFAULT_SSH_CONNECT_TIMEOUT = 10
DEFAULT_PACKAGE_WAIT_TIMEOUT = 1800
DEFAULT_INTER_TARGET_PAUSE = 5.0

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

DEBIAN_VERSION_FILE = "/etc/debian_version"
SOURCES_LIST = "/etc/apt/sources.list"
SOURCES_LIST_BACKUP = "/etc/apt/sources.list.backup"

APPARMOR_PROFILE_NAME = "lxc-debian13-homelab"
APPARMOR_PROFILE_PATH = f"/etc/apparmor.d/{APPARMOR_PROFILE_NAME}"
APPARMOR_CONFIG_KEY = "lxc.apparmor.profile"
