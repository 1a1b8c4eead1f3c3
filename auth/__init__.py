"""auth/ -- Federated login pipeline for va-auth.

Start (state binding + authorization request), Finalize (code exchange,
claim extraction, profile reconciliation, session issuance) and the pieces
they share: return-URL resolution, state codecs, session tokens.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
