# src/tracking/__init__.py — v1
