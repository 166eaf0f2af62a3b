"""Participant-side primitives (peer negotiation, control channel, session lifecycle).

Kept free of FastAPI concerns so they can run in any asyncio participant and in tests.
"""
