"""FHIR resource helpers."""
