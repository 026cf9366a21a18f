"""chatrelay: real-time chat backend.

Modules:
    - auth: bearer credential validation (Identity Gate)
    - conversations: durable Chat/Message records (Conversation Store)
    - realtime: live connections and broadcast groups (Presence Router)
    - messaging: the send path (Message Pipeline)
    - readstate: read markers and unread counts (Read-State Tracker)
    - membership: group membership changes (Membership Manager)
    - users: user lookup
    - media: media uploads via the blob store
    - store: document store repository (DuckDB)
"""
__version__ = "0.1.0"
