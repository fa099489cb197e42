"""Tests for HMAC tokens."""

import pytest

from assetflow.tokens import (
    TokenException,
    generate_token,
    get_timestamp,
    validate_token,
)


class TestTokens:
    """Tests for generate_token/validate_token."""

    def test_valid_token(self):
        """Test that a fresh token validates."""
        token = generate_token(get_timestamp(), '/assets/1', 'secret')

        validate_token(token, '/assets/1', 'secret', time_tolerance=60)

    def test_wrong_value(self):
        """Test that a token is bound to its value."""
        token = generate_token(get_timestamp(), '/assets/1', 'secret')

        with pytest.raises(TokenException, match='invalid'):
            validate_token(token, '/assets/2', 'secret')

    def test_wrong_key(self):
        """Test that a token signed with another key fails."""
        token = generate_token(get_timestamp(), '/assets/1', 'other')

        with pytest.raises(TokenException):
            validate_token(token, '/assets/1', 'secret')

    def test_out_of_tolerance(self):
        """Test that old tokens are rejected."""
        token = generate_token(get_timestamp() - 3600, '/assets/1', 'secret')

        with pytest.raises(TokenException, match='out of range'):
            validate_token(token, '/assets/1', 'secret', time_tolerance=60)

    @pytest.mark.parametrize('token', ['', 'nocolon', 'abc:notanumber'])
    def test_malformed(self, token):
        """Test missing and malformed tokens."""
        with pytest.raises(TokenException):
            validate_token(token, '/assets/1', 'secret')

    def test_no_key_skips_validation(self):
        """Test that validation is disabled without a key."""
        validate_token('', '/assets/1', None)
