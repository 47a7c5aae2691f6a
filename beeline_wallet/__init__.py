"""Beeline Wallet: terminal wallet with a secure multi-account key vault."""
from .version import __version__
from .wallet import Wallet, DEFAULT_LOGIN_ROLES

__all__ = ["__version__", "Wallet", "DEFAULT_LOGIN_ROLES"]
