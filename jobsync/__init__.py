"""One-way synchronization of CRM job vacancies into a CMS collection."""

__version__ = "0.1.0"
