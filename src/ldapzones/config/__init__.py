"""Configuration loading and logging setup for ldapzones."""
