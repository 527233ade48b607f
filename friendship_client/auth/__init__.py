"""
Authentication package for the Friendship session client.

This package contains the credential lifecycle: secure credential storage,
claims decoding, coalesced refresh after authentication failures, proactive
refresh scheduling and session state management.
"""
