"""auth/ -- Credentials, sessions, confirmation tokens and scoped data access for Gatehouse.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or accounts/.
accounts/ and api/ import from auth/, not the other way around.
"""
