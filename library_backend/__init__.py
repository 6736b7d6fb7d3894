"""Library Management Backend - Core Application Package

This package contains the core application modules including:
- API endpoints (api.py)
- Library facade wiring the services together (library.py)
- Identity, policy, catalog, borrowing, reporting and stats services
- Data models (models.py)
- Database layer (database.py)
- CLI interface (cli.py)
"""

__version__ = "1.0.0"
