"""
LDAP Reconcile - Import directory users and groups into a local account store.

This package pages through LDAP/AD search results, maps directory attributes
onto local records, decides create/update/restore per entry and links nested
groups into their parents' subgroup lists.
"""

__version__ = "1.0.0"
__author__ = "LDAP Reconcile Team"
