"""Payment-gated job reconciliation service package.

Having this file ensures the 'paygate' directory is recognized as a standard
Python package during test discovery and editable installs.
"""

__all__: list[str] = []
