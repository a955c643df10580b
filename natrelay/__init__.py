"""Relay server, client connection and message helpers for connecting nodes behind NAT."""

__version__ = "0.1.0"