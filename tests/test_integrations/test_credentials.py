"""
Tests for pipewright.integrations.credentials
===============================================

What's Being Tested:
    - One token per requested permission, scoped to run and job
    - Request log
    - Revocation
"""

from pipewright.core.enums import Permission
from pipewright.integrations.credentials import CredentialIssuer, InMemoryCredentialIssuer


class TestInMemoryCredentialIssuer:
    def test_is_credential_issuer(self) -> None:
        assert isinstance(InMemoryCredentialIssuer(), CredentialIssuer)

    async def test_issues_exactly_requested(self, credential_issuer) -> None:
        requested = frozenset({Permission.READ_SOURCE, Permission.WRITE_PAGES})

        tokens = await credential_issuer.issue("run-1", "deploy", requested)

        assert set(tokens) == requested
        for permission, token in tokens.items():
            assert token.permission == permission
            assert token.run_id == "run-1"
            assert token.job == "deploy"
            assert token.expires_at > token.issued_at
        assert credential_issuer.requests == [("run-1", "deploy", requested)]

    async def test_tokens_are_unique(self, credential_issuer) -> None:
        first = await credential_issuer.issue("run-1", "a", frozenset({Permission.READ_SOURCE}))
        second = await credential_issuer.issue("run-1", "b", frozenset({Permission.READ_SOURCE}))
        assert first[Permission.READ_SOURCE].token != second[Permission.READ_SOURCE].token

    async def test_empty_request(self, credential_issuer) -> None:
        assert await credential_issuer.issue("run-1", "build", frozenset()) == {}

    async def test_revoke(self, credential_issuer) -> None:
        await credential_issuer.issue("run-1", "build", frozenset({Permission.READ_SOURCE}))
        assert credential_issuer.active_tokens("run-1", "build")

        await credential_issuer.revoke("run-1", "build")
        await credential_issuer.revoke("run-1", "build")

        assert credential_issuer.active_tokens("run-1", "build") == {}
