"""auth/ -- Authentication, session, account lifecycle and authorization for the portal.

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/ or audit/. api/ imports from auth/, not the
other way around. dependencies.py is the one module that touches FastAPI.
"""
