"""Plugin packages for ldapzones (resolve plugins live in ldapzones.plugins.resolve)."""
