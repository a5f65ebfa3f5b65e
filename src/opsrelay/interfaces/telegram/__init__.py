"""Telegram interface: inbound callback listener and message renderers."""
