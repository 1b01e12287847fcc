"""Smoke test to verify the package imports and testing infrastructure works."""

from hypothesis import given
from hypothesis import strategies as st

import orderrelay
from tests.conftest import make_message


def test_public_api_exports():
    for name in orderrelay.__all__:
        assert hasattr(orderrelay, name), name


@given(quantity=st.integers(min_value=1, max_value=10_000))
def test_message_factory(quantity: int):
    """Verify the shared message factory builds valid messages."""
    message = make_message(quantity=quantity)
    assert message.line_items[0].quantity == quantity
