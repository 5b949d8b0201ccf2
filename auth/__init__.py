"""auth/ -- Authentication and authorization core for the admin dashboard.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/.
api/ imports from auth/, not the other way around.
"""
