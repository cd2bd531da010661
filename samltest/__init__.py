"""SAML 2.0 SSO test platform acting as both Service Provider and Identity Provider."""

__version__ = "0.1.0"
