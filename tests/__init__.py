"""Test suite for the evidence pipeline.

Hermetic tests following the pytest framework. Test modules mirror the
evidence_pipeline package modules for discoverability.

Testing Philosophy:
    - httpx.MockTransport and scripted fakes for network isolation
    - Property-based tests (hypothesis) for the statistical code
    - No external dependencies; all I/O stays in memory or tmp_path
"""
