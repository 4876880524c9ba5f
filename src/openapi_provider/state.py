from pathlib import Path
from typing import Optional


class AppState:
    """Process-wide CLI flags shared by the command handlers."""

    def __init__(self):
        self.verbose_mode: bool = False
        # Set by `--home`; falls back to PROVIDER_HOME when None.
        self.home: Optional[Path] = None


APP_STATE = AppState()
