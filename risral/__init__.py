"""
RISRAL — Reputation-Inclusive Self-Referential Agentic Loop
===========================================================
Drives one human operator and a text-generation agent CLI through
planning, execution and review, carrying a scored reputation of the
agent's behavior from one session to the next.
"""

__version__ = "0.1.0"
try:
    from importlib.metadata import version as _pkg_version
    __version__ = _pkg_version("risral")
except Exception:
    pass  # Not installed as package — use hardcoded fallback
