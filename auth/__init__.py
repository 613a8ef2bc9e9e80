"""auth/ -- Authentication and authorization core for Restwarden.

Layer rule: auth/ imports stdlib, third-party libraries, core/ (config,
clock) and cache/. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
