"""Authentication against the monitored Salesforce org."""

from .salesforce_auth import AuthProvider, Connection, SalesforceAuthProvider, SalesforceConnection

__all__ = ["AuthProvider", "Connection", "SalesforceAuthProvider", "SalesforceConnection"]
