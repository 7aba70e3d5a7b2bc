"""Local session log and host context."""

from obsmem.session.manager import LocalHostContext, LocalUI, SessionLog

__all__ = ["LocalHostContext", "LocalUI", "SessionLog"]
