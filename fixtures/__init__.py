"""
Quest Engine - Test Fixtures

In-memory stand-ins for the live client: SimulatedWorld and FakeClock.
"""
