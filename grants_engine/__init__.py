"""
Grants Engine - scraping orchestration for the grants catalog.

Architecture:
- core/: Stable foundation (models, clock, normalizers, selectors, rate limiter)
- config/: Environment settings and YAML source definitions
- storage/: SQLite catalog store (sources, jobs, grants, funders)
- engines/: Fetch/parse strategies (static HTTP, headless browser)
- registry, processor, scheduler, monitoring: the engine itself
- api/: Control and status HTTP API
"""

__version__ = "0.2.0"
__all__ = ["__version__"]
