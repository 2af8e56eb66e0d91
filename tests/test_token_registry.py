# Tests for token_registry.py: clients, single-use codes, PKCE and access tokens.

import threading
from datetime import timedelta

import pytest

from conftest import make_pkce_pair
from exceptions import InvalidClientMetadata, UnknownClient
from token_registry import TokenRegistry, is_absolute_uri, verify_code_challenge

REDIRECT = "https://host/cb"


@pytest.fixture
def clocked(clock):
    return TokenRegistry(clock=clock)


def _client(registry, public=False):
    client, secret = registry.register_client([REDIRECT], client_name="Test", public=public)
    return client, secret


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class TestClients:
    def test_register_confidential_client_returns_secret_once(self, registry):
        client, secret = _client(registry)
        assert secret
        assert client.is_confidential
        assert client.client_secret_hash != secret
        assert registry.verify_client_secret(client.client_id, secret)
        assert not registry.verify_client_secret(client.client_id, "wrong")

    def test_register_public_client_has_no_secret(self, registry):
        client, secret = _client(registry, public=True)
        assert secret is None
        assert not client.is_confidential
        assert client.token_endpoint_auth_method == "none"
        assert not registry.verify_client_secret(client.client_id, "anything")

    def test_client_ids_are_never_reused(self, registry):
        ids = {_client(registry)[0].client_id for _ in range(50)}
        assert len(ids) == 50

    def test_redirect_uris_required(self, registry):
        with pytest.raises(InvalidClientMetadata):
            registry.register_client([])

    @pytest.mark.parametrize("uri", ["not-a-uri", "/relative/cb", "https://host/cb#frag"])
    def test_redirect_uris_must_be_absolute(self, registry, uri):
        with pytest.raises(InvalidClientMetadata):
            registry.register_client([uri])

    def test_seed_client_with_secret(self, registry):
        client = registry.seed_client("preset", client_secret="s3cret", redirect_uris=[REDIRECT])
        assert registry.get_client("preset") == client
        assert client.grant_types == ["client_credentials", "authorization_code"]
        assert registry.verify_client_secret("preset", "s3cret")

    def test_seed_client_twice_fails(self, registry):
        registry.seed_client("preset", client_secret="s3cret")
        with pytest.raises(ValueError):
            registry.seed_client("preset", client_secret="other")

    def test_get_unknown_client(self, registry):
        assert registry.get_client("missing") is None
        assert registry.get_client(None) is None


# ---------------------------------------------------------------------------
# Authorization codes
# ---------------------------------------------------------------------------


class TestAuthorizationCodes:
    def test_issue_for_unknown_client_fails(self, registry):
        with pytest.raises(UnknownClient):
            registry.issue_authorization_code("missing", REDIRECT)

    def test_consume_with_correct_parameters(self, registry):
        client, _ = _client(registry)
        code = registry.issue_authorization_code(client.client_id, REDIRECT, scope="calendar")
        result = registry.consume_authorization_code(code, client.client_id, REDIRECT)
        assert result.valid
        assert result.scope == "calendar"

    def test_code_is_single_use(self, registry):
        client, _ = _client(registry)
        code = registry.issue_authorization_code(client.client_id, REDIRECT)
        assert registry.consume_authorization_code(code, client.client_id, REDIRECT).valid
        second = registry.consume_authorization_code(code, client.client_id, REDIRECT)
        assert not second.valid
        assert second.reason == "unknown authorization code"

    def test_redeemed_codes_are_freed(self, registry):
        client, _ = _client(registry)
        for _ in range(20):
            code = registry.issue_authorization_code(client.client_id, REDIRECT)
            assert registry.consume_authorization_code(code, client.client_id, REDIRECT).valid
        assert registry._codes == {}

    def test_redirect_uri_mismatch(self, registry):
        client, _ = _client(registry)
        code = registry.issue_authorization_code(client.client_id, REDIRECT)
        result = registry.consume_authorization_code(code, client.client_id, "https://host/other")
        assert not result.valid
        assert result.reason == "redirect_uri does not match"

    def test_client_id_mismatch(self, registry):
        client, _ = _client(registry)
        other, _ = _client(registry)
        code = registry.issue_authorization_code(client.client_id, REDIRECT)
        result = registry.consume_authorization_code(code, other.client_id, REDIRECT)
        assert not result.valid
        assert result.reason == "client_id does not match"

    def test_unknown_code(self, registry):
        client, _ = _client(registry)
        result = registry.consume_authorization_code("nope", client.client_id, REDIRECT)
        assert not result.valid
        assert result.reason == "unknown authorization code"

    def test_pkce_verifier_required(self, registry):
        client, _ = _client(registry, public=True)
        _, challenge = make_pkce_pair()
        code = registry.issue_authorization_code(client.client_id, REDIRECT, code_challenge=challenge)
        result = registry.consume_authorization_code(code, client.client_id, REDIRECT)
        assert not result.valid
        assert result.reason == "code_verifier required"

    def test_pkce_matching_verifier_succeeds_once(self, registry):
        client, _ = _client(registry, public=True)
        verifier, challenge = make_pkce_pair()
        code = registry.issue_authorization_code(client.client_id, REDIRECT, code_challenge=challenge,
                                                 code_challenge_method="S256")
        assert registry.consume_authorization_code(code, client.client_id, REDIRECT, verifier).valid
        assert not registry.consume_authorization_code(code, client.client_id, REDIRECT, verifier).valid

    def test_failed_attempt_burns_the_code(self, registry):
        client, _ = _client(registry, public=True)
        verifier, challenge = make_pkce_pair()
        code = registry.issue_authorization_code(client.client_id, REDIRECT, code_challenge=challenge,
                                                 code_challenge_method="S256")
        wrong = registry.consume_authorization_code(code, client.client_id, REDIRECT, "wrong-verifier")
        assert not wrong.valid
        assert wrong.reason == "invalid code_verifier"

        retry = registry.consume_authorization_code(code, client.client_id, REDIRECT, verifier)
        assert not retry.valid
        assert retry.reason == "unknown authorization code"
        assert registry._codes == {}

    def test_expired_code(self, clocked, clock):
        client, _ = _client(clocked)
        code = clocked.issue_authorization_code(client.client_id, REDIRECT)
        clock.advance(minutes=10)
        result = clocked.consume_authorization_code(code, client.client_id, REDIRECT)
        assert not result.valid
        assert result.reason == "authorization code expired"

    def test_concurrent_consume_succeeds_once(self, registry):
        client, _ = _client(registry)
        code = registry.issue_authorization_code(client.client_id, REDIRECT)
        results = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            results.append(registry.consume_authorization_code(code, client.client_id, REDIRECT).valid)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


class TestAccessTokens:
    def test_issue_and_validate(self, registry):
        token = registry.issue_access_token("client-1", scope="calendar")
        assert token.token_type == "Bearer"
        assert token.expires_in == 3600
        assert registry.validate_access_token(token.token)
        assert registry.get_access_token(token.token).scope == "calendar"

    def test_unknown_and_empty_tokens_are_invalid(self, registry):
        assert not registry.validate_access_token("does-not-exist")
        assert not registry.validate_access_token("")
        assert not registry.validate_access_token(None)

    def test_expired_token_is_invalid(self, clocked, clock):
        token = clocked.issue_access_token("client-1")
        clock.advance(minutes=59)
        assert clocked.validate_access_token(token.token)
        clock.advance(minutes=1)
        assert not clocked.validate_access_token(token.token)

    def test_tokens_are_unique(self, registry):
        tokens = {registry.issue_access_token("client-1").token for _ in range(50)}
        assert len(tokens) == 50

    def test_custom_ttl(self, clock):
        registry = TokenRegistry(access_token_ttl=timedelta(seconds=30), clock=clock)
        assert registry.issue_access_token("client-1").expires_in == 30

    def test_purge_expired(self, clocked, clock):
        client, _ = _client(clocked)
        used = clocked.issue_authorization_code(client.client_id, REDIRECT)
        clocked.consume_authorization_code(used, client.client_id, REDIRECT)
        clocked.issue_authorization_code(client.client_id, REDIRECT)
        clocked.issue_access_token(client.client_id)
        assert clocked.purge_expired() == 0
        clock.advance(hours=2)
        assert clocked.purge_expired() == 2
        assert clocked._codes == {}
        assert clocked._tokens == {}

    def test_issuing_purges_stale_entries(self, clocked, clock):
        client, _ = _client(clocked)
        for _ in range(5):
            clocked.issue_authorization_code(client.client_id, REDIRECT)
            clocked.issue_access_token(client.client_id)
        clock.advance(hours=2)
        fresh = clocked.issue_access_token(client.client_id)
        assert list(clocked._tokens) == [fresh.token]
        assert clocked._codes == {}

    def test_purge_waits_for_interval(self, clock):
        registry = TokenRegistry(clock=clock, purge_interval=timedelta(hours=1))
        client, _ = _client(registry)
        registry.issue_authorization_code(client.client_id, REDIRECT)
        clock.advance(minutes=11)
        registry.issue_access_token(client.client_id)
        assert len(registry._codes) == 1
        clock.advance(hours=1)
        registry.issue_access_token(client.client_id)
        assert len(registry._codes) == 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_verify_code_challenge(self):
        verifier, challenge = make_pkce_pair()
        assert verify_code_challenge(verifier, challenge)
        assert not verify_code_challenge("other", challenge)
        assert not verify_code_challenge(verifier, challenge, method="plain")

    def test_verify_code_challenge_non_ascii(self):
        _, challenge = make_pkce_pair()
        assert not verify_code_challenge("vérifier", challenge)

    def test_is_absolute_uri(self):
        assert is_absolute_uri("https://host/cb")
        assert is_absolute_uri("http://localhost:8080/callback?x=1")
        assert not is_absolute_uri("host/cb")
        assert not is_absolute_uri("")
        assert not is_absolute_uri(None)
