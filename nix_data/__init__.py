"""
Package metadata cache and reconciliation engine for Nix and NixOS.

Snapshots of upstream package data are fetched into a local cache directory
and compared against the packages a user has installed, to report the
versions an upgrade would bring and the packages it would break.
"""
