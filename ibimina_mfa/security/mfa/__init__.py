"""
Ibimina Multi-Factor Authentication Module

Example Usage:
    from ibimina_mfa.app import create_app
    from ibimina_mfa.security.mfa.services import get_orchestrator

    app = create_app({"MFA_DATA_KEY": ..., "MFA_SESSION_SECRET": ...})
    with app.test_request_context():
        descriptor = get_orchestrator().initiate_challenge(user, "email")

Components:
    - config: Defaults and validation for ``MFA_*`` settings
    - models: Database models for MFA state, devices, codes and audit events
    - factors: One provider per factor kind
    - delivery: Email and WhatsApp senders
    - session: Session and trusted-device cookies
    - services: The orchestrator, the only writer of MFA state
    - views: JSON API blueprint

Security Considerations:
    - TOTP secrets are encrypted at rest with AES-256-GCM
    - Backup codes and issued codes are stored as peppered hashes
    - Verification failures return one generic error
    - Rate limiting and replay protection guard every verification
"""
