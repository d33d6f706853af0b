"""
Global pytest configuration for the Shipyard daemon.
"""


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "asyncio: mark test as an asyncio coroutine")
    config.addinivalue_line(
        "markers", "subprocess: marks tests that spawn real child processes"
    )
