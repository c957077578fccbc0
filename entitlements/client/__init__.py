"""
Client-side entitlement library.

Keeps a user-scoped local cache of the entitlement snapshot, answers feature
checks offline from that cache, forwards consumes to the server, and polls
for the webhook-applied snapshot after a checkout redirect.
"""
