"""auth/ -- Authentication, session and password-reset package for Survista.

Layer rule: auth/ imports only stdlib + third-party libraries and core/.
It does NOT import from api/ or mail/.
api/ imports from auth/, not the other way around.
"""
