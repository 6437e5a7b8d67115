"""Map GPU process owners to local user names."""

import logging
import pwd
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

LOGIN_DEFS = "/etc/login.defs"
NOLOGIN_SHELLS = frozenset({"/sbin/nologin", "/usr/sbin/nologin"})

# Debian/RHEL defaults, used when login.defs is missing or incomplete
DEFAULT_UID_MIN = 1000
DEFAULT_UID_MAX = 60000


def read_login_defs(path: str = LOGIN_DEFS) -> Dict[str, str]:
    """
    Parse a whitespace-separated KEY VALUE file, ignoring comments.

    Args:
        path: File to parse

    Returns:
        Dict[str, str]: Parsed settings, empty if the file does not exist
    """
    defs_file = Path(path)
    if not defs_file.exists():
        return {}

    settings = {}
    for line in defs_file.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        parts = line.split(None, 1)
        if len(parts) == 2:
            settings[parts[0]] = parts[1].strip()
    return settings


class UserDirectory:
    """
    Split local accounts into login users and system/blocked accounts.

    Login users have UID_MIN <= uid < UID_MAX and a usable shell. Everything
    else is "blocked" and only reported when show_all_users is set.
    """

    def __init__(
        self,
        login_defs_path: str = LOGIN_DEFS,
        passwd_entries: Callable[[], Iterable] = pwd.getpwall,
        logger: logging.Logger = None
    ):
        self.login_defs_path = login_defs_path
        self._passwd_entries = passwd_entries
        self.logger = logger or logging.getLogger(__name__)
        self.known: Dict[int, str] = {}
        self.blocked: Dict[int, str] = {}
        self.refresh()

    def _uid_range(self):
        settings = read_login_defs(self.login_defs_path)
        try:
            uid_min = int(settings.get("UID_MIN", DEFAULT_UID_MIN))
            uid_max = int(settings.get("UID_MAX", DEFAULT_UID_MAX))
        except ValueError:
            self.logger.warning(f"Unparseable UID range in {self.login_defs_path}, using defaults")
            uid_min, uid_max = DEFAULT_UID_MIN, DEFAULT_UID_MAX
        return uid_min, uid_max

    def refresh(self) -> None:
        """Reload the account database."""
        uid_min, uid_max = self._uid_range()
        known, blocked = {}, {}
        for entry in self._passwd_entries():
            if uid_min <= entry.pw_uid < uid_max and entry.pw_shell not in NOLOGIN_SHELLS:
                known.setdefault(entry.pw_uid, entry.pw_name)
            else:
                blocked.setdefault(entry.pw_uid, entry.pw_name)
        self.known, self.blocked = known, blocked

    def __contains__(self, uid: int) -> bool:
        return uid in self.known or uid in self.blocked

    def resolve(self, uid: int, show_all_users: bool = False) -> Optional[str]:
        """
        Resolve a uid to the name it is reported under.

        Returns:
            Optional[str]: User name, the numeric uid as text for unknown
            accounts when show_all_users is set, or None to hide the user
        """
        if uid in self.known:
            return self.known[uid]
        if not show_all_users:
            return None
        return self.blocked.get(uid, str(uid))
