"""Live collaboration over WebSocket.

Services:
    - PresenceHub: inbound event dispatch, join/leave/disconnect handling.
    - RoomRegistry / ConnectionIdentityTable: process-local membership.
    - BroadcastDispatcher: concurrent room fan-out and direct messages.
"""
