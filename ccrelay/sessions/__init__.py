from ccrelay.sessions.directory import SessionDirectory, SessionSummary

__all__ = ["SessionDirectory", "SessionSummary"]
