"""
FacilityXL - reconciled facility financial profiles from extracted documents.
"""

__version__ = "1.0.0"
