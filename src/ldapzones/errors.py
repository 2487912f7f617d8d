"""Exception types raised by the LDAP zone synchronization and query paths."""


class LdapZonesError(Exception):
    """Brief: Base class for all ldapzones errors.

    Inputs:
      - message: description

    Outputs:
      - Exception instance
    """


class DirectoryError(LdapZonesError):
    """
    Brief: Directory connection, bind, or search failure.

    Inputs:
      - message: description (usually wraps the python-ldap error)

    Outputs:
      - Exception instance; aborts the current refresh cycle only.
    """


class AssemblyError(LdapZonesError):
    """
    Brief: Zone invariant violation while building a snapshot.

    Inputs:
      - message: description (duplicate SOA, out-of-zone owner, ...)

    Outputs:
      - Exception instance; aborts the current refresh cycle only.
    """


class ZoneNotReady(LdapZonesError):
    """
    Brief: A configured zone has never been synchronized.

    Inputs:
      - zone: zone apex that was queried

    Outputs:
      - Exception instance; maps to SERVFAIL at query time.
    """

    def __init__(self, zone: str) -> None:
        super().__init__(f"zone {zone} has not been synchronized")
        self.zone = zone
