"""Pure domain types: lifecycle, principal, DTOs, protocols.  Zero I/O."""
