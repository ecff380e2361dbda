"""Local WhatsApp message history store and exporter."""

__version__ = "0.1.0"
