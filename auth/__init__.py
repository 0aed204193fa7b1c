"""auth/ -- Users, credentials and request authentication for Fleetplane.

Layer rule: auth/ never imports from api/.
api/ imports from auth/, not the other way around. auth/dependencies.py is
the one module that also reaches into iam/ and fleet/, because it resolves
principals and device keys at the HTTP boundary.
"""
