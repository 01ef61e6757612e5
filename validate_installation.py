#!/usr/bin/env python3
"""
Installation check for LDAP Reconcile.

Verifies that the required libraries import, that every package module
loads, and that an offline reconciliation against the in-memory store works.
"""

import sys
import importlib


def check_import(label, import_name):
    try:
        importlib.import_module(import_name)
        return True, f"✓ {label} available"
    except ImportError as e:
        return False, f"✗ {label} missing: {e}"


def validate_dependencies():
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
    ]

    all_ok = True
    for label, import_name in dependencies:
        ok, message = check_import(label, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_core_modules():
    print("\n=== Core Module Validation ===")

    modules = [
        "ldap_reconcile.config",
        "ldap_reconcile.context",
        "ldap_reconcile.hierarchy",
        "ldap_reconcile.ldap_client",
        "ldap_reconcile.main",
        "ldap_reconcile.mapping",
        "ldap_reconcile.matcher",
        "ldap_reconcile.notifications",
        "ldap_reconcile.page_source",
        "ldap_reconcile.postprocessing",
        "ldap_reconcile.reconciler",
        "ldap_reconcile.retry",
        "ldap_reconcile.stores.memory",
        "ldap_reconcile.stores.rest",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_import(module, module)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


class _OfflineDirectory:
    """Directory client answering every search with one fixed page."""

    def __init__(self, entries):
        self.entries = entries

    def search(self, base_dn, search_filter, attributes=None, first_entry_only=False, size_limit=0, resume=False):
        if resume:
            return [], False
        return list(self.entries), False


def validate_functionality():
    print("\n=== Functionality Validation ===")

    from ldap_reconcile.context import SyncContext, TargetTable
    from ldap_reconcile.mapping import MappingTable
    from ldap_reconcile.matcher import LocalRecordMatcher
    from ldap_reconcile.models import DirectoryEntry, RunStatus
    from ldap_reconcile.page_source import DirectoryPageSource
    from ldap_reconcile.reconciler import Reconciler
    from ldap_reconcile.stores.memory import InMemoryStore

    try:
        mapping = MappingTable.parse("username = <uid:first>\nemail = <mail>")
        print("  ✓ Mapping parsing")

        context = SyncContext(
            target=TargetTable('users'),
            base_dn='ou=people,dc=example,dc=org',
            search_filter='(objectClass=person)',
            mapping=mapping,
            attributes=tuple(mapping.attributes())
        )
        store = InMemoryStore()
        directory = _OfflineDirectory([
            DirectoryEntry('uid=jdoe,ou=people,dc=example,dc=org', {'uid': ['jdoe'], 'mail': ['jdoe@example.org']})
        ])
        reconciler = Reconciler(context, DirectoryPageSource(directory), LocalRecordMatcher(store), store)
        result = reconciler.run()
        if result.status is not RunStatus.COMPLETED or result.counters.users_added != 1:
            print(f"  ✗ Offline reconciliation returned {result.as_dict()}")
            return False
        print("  ✓ Offline reconciliation")
        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    print("\n=== CLI Validation ===")

    import subprocess

    result = subprocess.run([sys.executable, "-m", "ldap_reconcile.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode != 0:
        print(f"  ✗ Help command failed: {result.stderr.strip()}")
        return False
    print("  ✓ Help command working")
    return True


def main():
    print("LDAP Reconcile - Installation Validation")
    print("=" * 50)

    results = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(results):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Configure directory, mapping and store settings in config.yaml")
        print("  2. Test with: ldap-reconcile --health-check")
        print("  3. Run an import: ldap-reconcile --import all")
        return 0

    print("✗ Some validations failed!")
    print("Please resolve the issues above before using the application.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
