"""
connectors — integration registry and credential lifecycle.

Provides:
  • A closed set of provider connectors behind one ``BaseConnector`` interface
  • OAuth2 authorization URLs and HMAC-signed, single-use callback state
  • Encrypted (AES-256-GCM) multi-account credential storage per tenant
  • Single-flight token refresh per credential
  • Tool dispatch that turns every failure into a ``ToolResult``

Each provider (Gmail, GitHub, Slack, OpenAI, …) is a subclass of BaseConnector.
"""
