"""Tests for PKCE and state generation."""

import re

import pytest

from remote_oauth.oauth.pkce import (
    CODE_CHALLENGE_METHOD,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
)

BASE64URL = re.compile(r"^[A-Za-z0-9_-]+$")


class TestCodeVerifier:
    """Tests for generate_code_verifier function."""

    def test_default_length_and_charset(self) -> None:
        verifier = generate_code_verifier()
        assert len(verifier) == 43
        assert BASE64URL.match(verifier)

    def test_verifiers_are_unique(self) -> None:
        assert len({generate_code_verifier() for _ in range(50)}) == 50

    def test_too_short_rejected(self) -> None:
        with pytest.raises(ValueError):
            generate_code_verifier(16)

    def test_too_long_rejected(self) -> None:
        with pytest.raises(ValueError):
            generate_code_verifier(100)


class TestCodeChallenge:
    """Tests for generate_code_challenge function."""

    def test_rfc7636_appendix_b_vector(self) -> None:
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_no_padding(self) -> None:
        assert "=" not in generate_code_challenge(generate_code_verifier())


class TestPKCEPair:
    """Tests for generate_pkce_pair function."""

    def test_pair_is_consistent(self) -> None:
        pair = generate_pkce_pair()
        assert pair.challenge == generate_code_challenge(pair.verifier)
        assert pair.method == CODE_CHALLENGE_METHOD == "S256"


class TestState:
    """Tests for generate_state function."""

    def test_state_has_128_bits(self) -> None:
        state = generate_state()
        assert len(state) == 22
        assert BASE64URL.match(state)
        assert state != generate_state()
