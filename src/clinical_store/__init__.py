"""Clinical Store.

Versioned document storage and FHIR search-parameter compilation for
clinical resources (patients, conditions, organizations, practitioners).
"""

__version__ = "0.1.0"
