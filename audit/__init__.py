"""audit/ -- Activity trail: out-of-band recording, enrichment, querying and export.

Layer rule: audit/ imports from core/ and auth/ (for user lookups during
enrichment). It does NOT import from api/. api/audit_route.py hands events
to the recorder; the recorder never sees a Request object.
"""
