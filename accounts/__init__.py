"""accounts/ -- Account flow orchestration for Gatehouse.

Every user-visible state transition (register, login, password change and
reset, email management, account deletion, external identity link/unlink)
lives in accounts/flows.py as a method that takes the caller explicitly and
returns an Ok / Fail result instead of raising for expected failures.

Layer rule: accounts/ imports from auth/ and core/ only. It does NOT import
from api/. Nothing here knows about HTTP.
"""
