"""Digests, wire messages, commands, Merkle trees and an in-memory action cache for remote build execution."""

__version__ = "0.1.0"