"""Customer and company settings models.

Both are read-only here: customers are maintained by the customer screens
and company settings by the settings screen.
"""

from pydantic import BaseModel


def _join_address(*parts: str | None) -> str:
    return ", ".join(p for p in parts if p)


class Customer(BaseModel):
    """Customer as needed for statements and payments."""

    id: str
    name: str
    email: str | None = None
    mobile: str | None = None
    address: str | None = None
    suburb: str | None = None
    state: str | None = None
    postcode: str | None = None

    model_config = {"from_attributes": True, "extra": "ignore"}

    @property
    def postal_address(self) -> str:
        """Address block as printed on a statement."""
        text = _join_address(self.address, self.suburb, self.state, self.postcode)
        if self.mobile:
            text += f"\nMobile: {self.mobile}"
        return text


class CompanySettings(BaseModel):
    """Single-row company configuration: letterhead and remittance details."""

    company_name: str | None = None
    address_line1: str | None = None
    suburb: str | None = None
    state: str | None = None
    postcode: str | None = None
    email: str | None = None
    phone: str | None = None
    bank_name: str | None = None
    bsb_number: str | None = None
    account_number: str | None = None
    bank_payid: str | None = None
    statement_info: str | None = None

    model_config = {"from_attributes": True, "extra": "ignore"}

    @property
    def company_address(self) -> str:
        return _join_address(self.address_line1, self.suburb, self.state, self.postcode)
