import asyncio
import unittest

from puppy_tracker.backend import InMemoryBackendClient
from puppy_tracker.errors import FetchTimeoutError, RemoteFailure
from puppy_tracker.session import SessionSynchronizer, SyncPhase
from puppy_tracker.types import AuthEvent, Session


class GatedBackend(InMemoryBackendClient):
    """Profile lookups for gated users block until the gate is opened."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gates: dict[str, asyncio.Event] = {}
        self.hang_get_session = False

    async def get_session(self):
        if self.hang_get_session:
            await asyncio.Event().wait()
        return await super().get_session()

    async def select_profile(self, user_id):
        gate = self.gates.get(user_id)
        if gate is not None:
            await gate.wait()
        return await super().select_profile(user_id)


ANN = Session(user_id="u-ann", email="ann@example.com", email_verified=True)
BOB = Session(user_id="u-bob", email="bob@example.com", email_verified=False)


class SessionSynchronizerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = GatedBackend()
        self.sync = SessionSynchronizer(
            self.backend, session_init_timeout=0.2, profile_fetch_timeout=0.1
        )
        self.snapshots = []
        self.sync.subscribe(self.snapshots.append)

    async def asyncTearDown(self):
        self.sync.close()

    async def test_initialize_without_session(self):
        state = await self.sync.initialize()
        self.assertEqual(state.phase, SyncPhase.UNAUTHENTICATED)
        self.assertFalse(state.loading)
        self.assertIsNone(state.session)
        self.assertEqual(self.backend.listener_count, 1)

    async def test_initialize_with_existing_session_loads_profile(self):
        self.backend.current = ANN
        self.backend.provision_profile(ANN.user_id, "Ann", "Rex")

        state = await self.sync.initialize()

        self.assertEqual(state.phase, SyncPhase.READY)
        self.assertEqual(state.session, ANN)
        self.assertTrue(state.email_verified)
        self.assertEqual(state.profile.puppy_name, "Rex")
        self.assertFalse(state.loading)

    async def test_initialize_error_is_not_fatal(self):
        self.backend.fail_next("get_session", RemoteFailure("boom", status=500))
        state = await self.sync.initialize()
        self.assertEqual(state.phase, SyncPhase.UNAUTHENTICATED)
        self.assertFalse(state.loading)
        self.assertIsInstance(state.last_error, RemoteFailure)

    async def test_initialize_gives_up_after_timeout(self):
        self.backend.hang_get_session = True
        state = await self.sync.initialize()
        self.assertEqual(state.phase, SyncPhase.UNAUTHENTICATED)
        self.assertFalse(state.loading)
        self.assertIsInstance(state.last_error, FetchTimeoutError)

    async def test_sign_up_without_provisioned_profile(self):
        await self.sync.initialize()
        await self.sync.sign_up(
            "a@b.com", "secret123", display_name="Ann", puppy_name="Rex"
        )
        state = await self.sync.settled()

        self.assertEqual(state.phase, SyncPhase.READY)
        self.assertEqual(state.session.email, "a@b.com")
        self.assertIsNone(state.profile)
        self.assertTrue(state.profile_missing)
        self.assertIsNone(state.last_error)
        self.assertFalse(state.loading)

    async def test_sign_in_converges_through_notification(self):
        await self.sync.initialize()
        self.backend.auto_provision_profiles = True
        await self.backend.sign_up(
            "ann@example.com", "secret123", display_name="Ann", puppy_name="Rex"
        )
        await self.backend.sign_out()
        await self.sync.settled()

        await self.sync.sign_in("ann@example.com", "secret123")
        state = await self.sync.settled()

        self.assertEqual(state.phase, SyncPhase.READY)
        self.assertEqual(state.profile.display_name, "Ann")

    async def test_sign_in_failure_leaves_state(self):
        await self.sync.initialize()
        with self.assertRaises(RemoteFailure):
            await self.sync.sign_in("nobody@example.com", "wrong")
        self.assertEqual(self.sync.state.phase, SyncPhase.UNAUTHENTICATED)

    async def test_profile_timeout_clears_loading_once(self):
        await self.sync.initialize()
        self.backend.gates[ANN.user_id] = asyncio.Event()
        self.snapshots.clear()
        loop = asyncio.get_running_loop()
        started = loop.time()

        self.backend.push_auth_change(AuthEvent.SIGNED_IN, ANN)
        state = await self.sync.settled()

        self.assertLess(loop.time() - started, self.sync.profile_fetch_timeout + 0.5)
        self.assertEqual(state.phase, SyncPhase.READY)
        self.assertIsNone(state.profile)
        self.assertFalse(state.loading)
        self.assertIsInstance(state.last_error, FetchTimeoutError)
        releases = [
            (before.loading, after.loading)
            for before, after in zip(self.snapshots, self.snapshots[1:])
        ].count((True, False))
        self.assertEqual(releases, 1)

    async def test_late_profile_after_timeout_is_ignored(self):
        await self.sync.initialize()
        self.backend.provision_profile(ANN.user_id, "Ann", "Rex")
        self.backend.provision_profile(BOB.user_id, "Bob", "Fido")
        gate = self.backend.gates[ANN.user_id] = asyncio.Event()

        self.backend.push_auth_change(AuthEvent.SIGNED_IN, ANN)
        await self.sync.settled()
        self.backend.push_auth_change(AuthEvent.SIGNED_IN, BOB)
        await self.sync.settled()

        gate.set()
        await asyncio.sleep(0.05)

        state = self.sync.state
        self.assertEqual(state.session, BOB)
        self.assertEqual(state.profile.puppy_name, "Fido")

    async def test_stale_generation_result_is_discarded(self):
        self.sync.profile_fetch_timeout = 5.0
        await self.sync.initialize()
        self.backend.provision_profile(ANN.user_id, "Ann", "Rex")
        self.backend.provision_profile(BOB.user_id, "Bob", "Fido")
        gate = self.backend.gates[ANN.user_id] = asyncio.Event()

        self.backend.push_auth_change(AuthEvent.SIGNED_IN, ANN)
        stale_fetch = self.sync._profile_task
        self.backend.push_auth_change(AuthEvent.SIGNED_IN, BOB)
        await self.sync.settled()
        self.assertEqual(self.sync.state.profile.puppy_name, "Fido")

        gate.set()
        profile = await stale_fetch

        self.assertEqual(profile.puppy_name, "Rex")
        self.assertEqual(self.sync.state.session, BOB)
        self.assertEqual(self.sync.state.profile.puppy_name, "Fido")
        self.assertFalse(self.sync.state.loading)

    async def test_last_notification_wins(self):
        await self.sync.initialize()
        sequences = [
            [ANN, BOB],
            [ANN, None, BOB],
            [BOB, ANN, None],
            [None, ANN, ANN],
        ]
        for sequence in sequences:
            with self.subTest(sequence=sequence):
                for session in sequence:
                    event = AuthEvent.SIGNED_IN if session else AuthEvent.SIGNED_OUT
                    self.backend.push_auth_change(event, session)
                state = await self.sync.settled()
                self.assertEqual(state.session, sequence[-1])
                if sequence[-1] is None:
                    self.assertEqual(state.phase, SyncPhase.UNAUTHENTICATED)
                    self.assertIsNone(state.profile)

    async def test_repeated_notifications_converge(self):
        await self.sync.initialize()
        self.backend.provision_profile(ANN.user_id, "Ann", "Rex")

        self.backend.push_auth_change(AuthEvent.SIGNED_IN, ANN)
        once = await self.sync.settled()
        for _ in range(3):
            self.backend.push_auth_change(AuthEvent.TOKEN_REFRESHED, ANN)
        again = await self.sync.settled()

        self.assertEqual(once.session, again.session)
        self.assertEqual(once.profile, again.profile)
        self.assertEqual(again.phase, SyncPhase.READY)

    async def test_profile_cleared_synchronously_with_session(self):
        await self.sync.initialize()
        self.backend.provision_profile(ANN.user_id, "Ann", "Rex")
        self.backend.push_auth_change(AuthEvent.SIGNED_IN, ANN)
        await self.sync.settled()

        self.backend.push_auth_change(AuthEvent.SIGNED_OUT, None)

        self.assertIsNone(self.sync.state.session)
        self.assertIsNone(self.sync.state.profile)
        self.assertFalse(self.sync.state.loading)

    async def test_sign_out_clears_state(self):
        self.backend.current = ANN
        self.backend.provision_profile(ANN.user_id, "Ann", "Rex")
        await self.sync.initialize()

        await self.sync.sign_out()

        self.assertEqual(self.sync.state.phase, SyncPhase.UNAUTHENTICATED)
        self.assertIsNone(self.sync.state.session)
        self.assertIsNone(self.sync.state.profile)

    async def test_sign_out_failure_keeps_state(self):
        self.backend.current = ANN
        self.backend.provision_profile(ANN.user_id, "Ann", "Rex")
        await self.sync.initialize()
        before = self.sync.state
        self.backend.fail_next("sign_out", RemoteFailure("offline"))

        with self.assertRaises(RemoteFailure):
            await self.sync.sign_out()

        self.assertIs(self.sync.state, before)

    async def test_update_profile(self):
        self.backend.current = ANN
        self.backend.provision_profile(ANN.user_id, "Ann", "Rex")
        await self.sync.initialize()

        await self.sync.update_profile(puppy_name="Max")

        self.assertEqual(self.sync.state.profile.puppy_name, "Max")
        self.assertEqual(self.sync.state.profile.display_name, "Ann")


if __name__ == "__main__":
    unittest.main()
