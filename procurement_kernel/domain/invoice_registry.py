"""Invoice registry protocol (external collaborator)."""

from typing import Protocol

from procurement_kernel.domain.dtos import InvoiceRef


class InvoiceRegistry(Protocol):
    """Looks up invoices by reference.  The kernel never reads their content."""

    def exists(self, invoice: InvoiceRef) -> bool:
        ...
