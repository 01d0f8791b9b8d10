#!/usr/bin/env python3
"""
Installation check for Directory Sync.

Verifies that third-party dependencies import, that every package module
loads, and that an in-memory reconciliation and the CLI work.
"""

import sys
import json
import importlib
import subprocess


def check_import(label, import_name):
    try:
        importlib.import_module(import_name)
        return True, f"✓ {label} available"
    except ImportError as e:
        return False, f"✗ {label} missing: {e}"


def validate_dependencies():
    print("=== Dependencies ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
    ]
    test_dependencies = [
        ("pytest", "pytest"),
    ]

    all_ok = True
    for label, import_name in dependencies:
        ok, message = check_import(label, import_name)
        print(f"  {message}")
        all_ok = all_ok and ok

    print("\n  Test dependencies:")
    for label, import_name in test_dependencies:
        _, message = check_import(label, import_name)
        print(f"  {message}")

    return all_ok


def validate_modules():
    print("\n=== Package Modules ===")

    modules = [
        "directory_sync.config",
        "directory_sync.engine",
        "directory_sync.diff",
        "directory_sync.lifecycle",
        "directory_sync.scheduler",
        "directory_sync.notifications",
        "directory_sync.sources.azure",
        "directory_sync.sources.ldap",
        "directory_sync.registry.ytsaurus",
        "directory_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_import(module, module)
        print(f"  {message}")
        all_ok = all_ok and ok
    return all_ok


def validate_reconciliation():
    """Derive registry names for a sample directory user and check duration parsing."""
    print("\n=== Reconciliation Building Blocks ===")

    try:
        from directory_sync.config import parse_duration
        from directory_sync.diff import diff_users
        from directory_sync.identity import IdentityMapper, ReplacementPair
        from directory_sync.sources.ldap import LdapUser

        mapper = IdentityMapper([ReplacementPair('@', ':')])
        diff = diff_users([LdapUser('Alice@partner.org', '1001')], [], mapper, LdapUser.from_raw, 'ldap')
        if [user.username for user in diff.create] != ['alice:partner.org']:
            print("  ✗ Unexpected diff result")
            return False
        print("  ✓ Name mapping and user diff")

        if parse_duration('1h30m').total_seconds() != 5400:
            print("  ✗ Duration parsing")
            return False
        print("  ✓ Duration parsing")
        return True

    except Exception as e:
        print(f"  ✗ Reconciliation check failed: {e}")
        return False


def validate_cli():
    print("\n=== CLI ===")

    result = subprocess.run([sys.executable, "-m", "directory_sync.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode != 0:
        print("  ✗ Help command failed")
        return False
    print("  ✓ Help command working")

    # Without a config file the health check must still answer with JSON
    result = subprocess.run([sys.executable, "-m", "directory_sync.main", "--health-check",
                             "--config", "/nonexistent/config.yaml"],
                            capture_output=True, text=True)
    try:
        health = json.loads(result.stdout)
    except json.JSONDecodeError:
        print("  ✗ Health check didn't return valid JSON")
        return False
    if result.returncode != 1 or health.get('status') != 'unhealthy':
        print("  ✗ Health check returned unexpected result")
        return False
    print("  ✓ Health check command working (missing config reported)")
    return True


def main():
    print("Directory Sync - Installation Validation")
    print("=" * 50)

    results = [
        validate_dependencies(),
        validate_modules(),
        validate_reconciliation(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(results):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and fill in your directory and YTsaurus settings")
        print("  2. Check connectivity: directory-sync --health-check")
        print("  3. Dry run a pass (apply_* flags off): directory-sync --once")
        print("  4. Run the service: directory-sync")
        return 0

    print("✗ Some validations failed!")
    return 1


if __name__ == "__main__":
    sys.exit(main())
