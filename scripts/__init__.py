# Copyright (c) 2025 MCE Maintainers
# License: MIT
"""
MCE CLI package.

Entry-point modules installed with the wheel; `mce-search` in pyproject.toml resolves
to scripts.run_search:main.
"""

__all__: list[str] = []
