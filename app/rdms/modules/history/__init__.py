"""
Versioning ledger.

- One immutable ItemHistory row per approved item change request
- Versions increase by one per UPDATE/DELETE and are never reused
- Display fields (fullId, title, usernames) are copied at write time so they
  survive deletion of the item or user
"""
