"""TapFare: tap-in/tap-out journey pricing with daily capping and a prepaid ledger."""

__version__ = "1.0.0"
