"""Security primitives shared by the MFA package."""
