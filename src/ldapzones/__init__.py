"""ldapzones: authoritative DNS zones mirrored from an LDAP directory."""

__version__ = "0.1.0"
