"""Kiosk core: device authorization, reader authorization and card payments."""

__version__ = "0.1.0"
