"""Web interface for the SAML test platform."""
