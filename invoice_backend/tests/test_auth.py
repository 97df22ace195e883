import json
import os
import shutil
import tempfile
import unittest

from eth_account import Account

from invoice_backend.auth import DenyAllAuthenticator, KeyringAuthenticator, token_digest
from invoice_backend.errors import AuthError, ConfigurationError
from invoice_backend.tests.fakes import ALICE_KEY, ALICE_TOKEN, BOB_KEY, BOB_TOKEN, keyring


class KeyringAuthenticatorTests(unittest.TestCase):
    def test_resolves_each_caller_to_own_wallet(self) -> None:
        authenticator = keyring()
        alice = authenticator.authenticate(ALICE_TOKEN)
        bob = authenticator.authenticate(BOB_TOKEN)
        self.assertEqual(alice.user_id, "alice")
        self.assertEqual(alice.address, Account.from_key(ALICE_KEY).address)
        self.assertEqual(bob.address, Account.from_key(BOB_KEY).address)

    def test_unknown_and_empty_tokens(self) -> None:
        authenticator = keyring()
        for token in ("", "guess", ALICE_TOKEN + " "):
            with self.subTest(token=token):
                with self.assertRaises(AuthError) as ctx:
                    authenticator.authenticate(token)
                self.assertEqual(ctx.exception.status, 401)

    def test_unusable_key_is_forbidden(self) -> None:
        authenticator = KeyringAuthenticator({token_digest("carol"): {"userId": "carol", "privateKey": "0x00"}})
        with self.assertLogs("invoice-backend.auth", level="ERROR"):
            with self.assertRaises(AuthError) as ctx:
                authenticator.authenticate("carol")
        self.assertEqual(ctx.exception.status, 403)

    def test_from_file(self) -> None:
        tmpdir = tempfile.mkdtemp(prefix="keyring-")
        self.addCleanup(shutil.rmtree, tmpdir)
        path = os.path.join(tmpdir, "keyring.json")
        with open(path, "w", encoding="utf-8") as handle:
            json.dump({token_digest(ALICE_TOKEN).upper(): {"userId": "alice", "privateKey": ALICE_KEY}}, handle)
        authenticator = KeyringAuthenticator.from_file(path)
        self.assertEqual(authenticator.authenticate(ALICE_TOKEN).user_id, "alice")
        with self.assertRaises(ConfigurationError):
            KeyringAuthenticator.from_file(os.path.join(tmpdir, "missing.json"))

    def test_deny_all(self) -> None:
        with self.assertRaises(AuthError):
            DenyAllAuthenticator().authenticate(ALICE_TOKEN)


if __name__ == "__main__":
    unittest.main()
