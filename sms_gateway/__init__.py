"""
UART SMS Gateway
REST API and notification gateway for serial cellular modems speaking the
SMS_START/CMD_START JSON line protocol

Licensed under Apache License 2.0
"""

__version__ = "1.0.0"
