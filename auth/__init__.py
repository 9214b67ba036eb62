"""auth/ -- Token lifecycle engine for tokengate.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/; settings are read by the callers and
passed in as plain constructor arguments.
api/ and main.py import from auth/, not the other way around.
"""
