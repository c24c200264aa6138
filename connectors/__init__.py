"""
connectors — provider framework for syncing third-party SaaS content.

Provides:
  • OAuth2 authorize URLs with PKCE and signed state
  • Code → token exchange through the token bridge
  • AES-GCM encryption of tokens at rest with IV / salt side metadata
  • Bearer-authenticated requests with a single refresh-and-retry on 401
  • Delta sync through one ``get_changes`` cursor contract

Each provider (Gmail, Drive, Notion, …) is a subclass of BaseConnectorProvider.
"""
