"""
samlflow: SAML single sign-on login flow with durable per-session login state.
"""

__version__ = "1.0.0"
