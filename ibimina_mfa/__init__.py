"""
Ibimina MFA

Multi-factor authentication core for SACCO+ staff accounts: TOTP, email and
WhatsApp codes, backup codes and passkeys behind one orchestrator, with
session and trusted-device cookies, rate limiting, replay protection and an
audit trail.
"""

__version__ = "1.0.0"
