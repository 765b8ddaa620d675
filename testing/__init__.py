"""Shared test support for shiplane.

Fakes of the external collaborators and tuned strategy configurations used
by the unit and integration suites.

Example:
    from testing.fakes import FAST_CANARY, FakeProvisioner, make_digest
"""
