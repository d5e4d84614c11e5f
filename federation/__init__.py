"""
Federation — outgoing ActivityPub delivery.

  - activitystreams: AS2 documents for activities
  - signatures:      HTTP Signatures (rsa-sha256)
  - delivery:        queue handlers for local notifications and remote inboxes
"""
