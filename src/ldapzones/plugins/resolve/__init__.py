"""Resolve plugins: the BasePlugin contract, the registry and LdapZones."""
