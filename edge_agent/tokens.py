# Token providers - supply the current bearer token for backend calls
# Refreshing tokens is done by an external process that rewrites the .env file

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

TOKEN_LINE = re.compile(r'^MACHINE_TOKEN=(.+)$', re.MULTILINE)


class StaticTokenProvider:
    """Always returns the token it was built with"""

    def __init__(self, token: str = ''):
        self.token = token

    def current_access_token(self) -> str:
        return self.token


class EnvFileTokenProvider:
    """Reads MACHINE_TOKEN from an env file, re-reading it when the file changes"""

    def __init__(self, env_path: str = '.env', fallback: str = ''):
        self.env_path = Path(env_path)
        self.fallback = fallback
        self._token = None
        self._mtime = None

    def current_access_token(self) -> str:
        try:
            mtime = os.stat(self.env_path).st_mtime
        except OSError:
            return self._token or self.fallback

        if mtime != self._mtime:
            try:
                match = TOKEN_LINE.search(self.env_path.read_text())
            except OSError as e:
                logger.warning("Could not read %s: %s", self.env_path, e)
                return self._token or self.fallback
            self._mtime = mtime
            if match:
                self._token = match.group(1).strip()
                logger.info("Loaded access token from %s", self.env_path)
        return self._token or self.fallback
