"""Data access managers for the nebi server.

Each module provides async functions that encapsulate CRUD operations
and business logic.  Managers accept ``AsyncSession`` as a parameter
and raise domain exceptions (see ``errors``), never HTTP exceptions --
that translation is the API layer's responsibility.
"""
