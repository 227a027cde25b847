"""HTTP routes for the TapFare service."""
