"""Transparent proxy supervisor: firewall rules, routes and proxy core lifecycle."""

__version__ = "1.0.0"