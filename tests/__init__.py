"""Test package marker so ``tests.unit`` and ``tests.e2e`` import deterministically."""
