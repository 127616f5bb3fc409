"""
WhatsApp pairing gateway.

HTTP API for linking WhatsApp accounts by pairing code, with one long-lived
protocol session per linked account.
"""

__version__ = "1.0.0"
