"""identity/ -- Authentication, authorization and session engine for Gatehouse.

Layer rule: identity/ imports only stdlib, third-party libraries and core/.
It does NOT import from main.py. The CLI imports from identity/, not the
other way around.
"""
