"""
Vizinho Virtual Gateway

Security gateway in front of the Vizinho Virtual condominium services:
authentication, authorization, request screening, audit and proxying.
"""

__version__ = "1.0.0"
