import unittest
from datetime import datetime, timedelta
from http.client import RemoteDisconnected
from unittest import mock

from _support import AppHarness

from infopics.errors import (
    AuthError,
    ConflictError,
    DuplicateEmail,
    DuplicateUsername,
    NotFoundError,
    ValidationError,
)
from infopics.extensions import db
from infopics.models.auth import AuthSignonEvent, PendingSignup, User
from infopics.services.identity import ExternalProfile
from infopics.services.mailer import ResendMailer
from infopics.services.session_state import OnboardingStage, SessionOnboardingState


class OnboardingTestCase(unittest.TestCase):
    config_overrides: dict[str, object] = {}

    def setUp(self) -> None:
        self.harness = AppHarness(**self.config_overrides)
        self.ctx = self.harness.app.app_context()
        self.ctx.push()
        self.flow = self.harness.onboarding
        self.mailer = self.harness.mailer

    def tearDown(self) -> None:
        self.ctx.pop()
        self.harness.close()

    def _local_signup(self, username="abc", email="a@gmail.com", password="secret1", state=None):
        return self.flow.begin_local_signup(
            state or SessionOnboardingState(), username=username, email=email, password=password
        )

    def _google(self, subject="g-1", email="x@gmail.com", state=None, current_user=None):
        profile = ExternalProfile(subject=subject, email=email, picture="https://img.example/g.png")
        return self.flow.begin_external_signup(
            state or SessionOnboardingState(), profile, current_user=current_user
        )

    def _existing_user(self, username="someone", email="someone@example.com", **extra):
        data = {"username": username, "email": email, "verified": True}
        data.update(extra)
        user = self.flow.credentials.create(data, "secret1")
        db.session.commit()
        return user


class LocalSignupTests(OnboardingTestCase):
    def test_scenario_local_signup_then_verify(self):
        t = self._local_signup()
        self.assertFalse(t.rejected)
        self.assertIs(t.stage, OnboardingStage.AWAITING_VERIFICATION)
        self.assertEqual(t.redirect_to, "/verify")
        self.assertEqual(PendingSignup.query.filter_by(email="a@gmail.com").count(), 1)
        self.assertEqual(t.state.temp_user.username, "abc")
        code = self.mailer.last_code("a@gmail.com")

        done = self.flow.submit_code(t.state, code=code)
        self.assertFalse(done.rejected)
        self.assertIs(done.stage, OnboardingStage.AUTHENTICATED)
        self.assertEqual(done.notice, "Account created. Welcome to InfoPics!")
        self.assertEqual(done.state, SessionOnboardingState())
        user = User.query.filter_by(username="abc").one()
        self.assertEqual(user.email, "a@gmail.com")
        self.assertTrue(user.verified)
        self.assertEqual(done.user.id, user.id)
        self.assertEqual(PendingSignup.query.count(), 0)
        self.assertIsNotNone(self.flow.credentials.verify_credential("abc", "secret1"))
        event = AuthSignonEvent.query.filter_by(user_id=user.id).one()
        self.assertEqual((event.provider, event.action), ("local", "register"))

    def test_pending_never_stores_plaintext_password(self):
        self._local_signup()
        record = PendingSignup.query.one()
        self.assertNotEqual(record.credential_preview, "secret1")
        self.assertNotIn("secret1", str(self._local_signup().state.to_dict()))

    def test_username_length_boundary(self):
        short = self._local_signup(username="ab")
        self.assertIsInstance(short.error, ValidationError)
        self.assertIs(short.stage, OnboardingStage.ANONYMOUS)
        ok = self._local_signup(username="abc")
        self.assertFalse(ok.rejected)

    def test_password_length_boundary(self):
        short = self._local_signup(password="12345")
        self.assertIsInstance(short.error, ValidationError)
        ok = self._local_signup(password="123456")
        self.assertFalse(ok.rejected)

    def test_bad_email_rejected(self):
        t = self._local_signup(email="not-an-email")
        self.assertIsInstance(t.error, ValidationError)
        self.assertEqual(t.error.code, 400)

    def test_local_validation_failures_never_touch_the_stores(self):
        with mock.patch.object(self.flow.pending, "upsert_by_email") as upsert, mock.patch.object(
            self.flow.credentials, "find_by_username"
        ) as lookup:
            for kwargs in ({"username": "ab"}, {"password": "12345"}, {"email": "nope"}):
                with self.subTest(**kwargs):
                    t = self._local_signup(**kwargs)
                    self.assertIsInstance(t.error, ValidationError)
        upsert.assert_not_called()
        lookup.assert_not_called()
        self.assertEqual(self.mailer.sent, [])

    def test_taken_username_rejected(self):
        self._existing_user(username="abc")
        t = self._local_signup(username="abc")
        self.assertIsInstance(t.error, DuplicateUsername)
        self.assertEqual(t.error.code, 409)
        self.assertEqual(PendingSignup.query.count(), 0)

    def test_shared_email_allowed_by_default(self):
        self._existing_user(username="first", email="a@gmail.com")
        t = self._local_signup(username="second")
        self.assertFalse(t.rejected)

    def test_last_signup_attempt_wins(self):
        self._local_signup(username="first")
        t = self._local_signup(username="second")
        self.assertEqual(PendingSignup.query.count(), 1)
        self.assertEqual(PendingSignup.query.one().username, "second")
        self.flow.submit_code(t.state, code=self.mailer.last_code())
        self.assertIsNotNone(User.query.filter_by(username="second").first())

    def test_mail_failure_keeps_flow_going(self):
        self.mailer.fail = True
        t = self._local_signup()
        self.assertFalse(t.rejected)
        self.assertIs(t.stage, OnboardingStage.AWAITING_VERIFICATION)
        self.assertIn("resending", t.warning)
        self.mailer.fail = False
        resent = self.flow.resend(t.state)
        self.assertEqual(resent.notice, "We sent a verification code to a@gmail.com.")

    def test_dropped_mail_connection_still_stages_the_signup(self):
        self.flow.codes.mailer = ResendMailer(
            api_key="re_test", from_email="no-reply@infopics.test", attempts=1
        )
        dropped = RemoteDisconnected("Remote end closed connection without response")
        with mock.patch("infopics.services.mailer.urlopen", side_effect=dropped), self.assertLogs(
            self.harness.app.logger, level="ERROR"
        ):
            t = self._local_signup()
            resent = self.flow.resend(t.state)
        self.assertFalse(t.rejected)
        self.assertIs(t.stage, OnboardingStage.AWAITING_VERIFICATION)
        self.assertIsNotNone(t.warning)
        self.assertIsNotNone(t.state.pending_id)
        self.assertIsNone(t.notice)
        self.assertFalse(resent.rejected)
        self.assertIsNotNone(resent.warning)
        self.assertEqual(PendingSignup.query.count(), 1)


class UniqueEmailPolicyTests(OnboardingTestCase):
    config_overrides = {"ENFORCE_UNIQUE_EMAIL": True}

    def test_existing_email_is_rejected_with_login_hint(self):
        self._existing_user(username="first", email="a@gmail.com")
        t = self._local_signup(username="second")
        self.assertIsInstance(t.error, DuplicateEmail)
        self.assertIn("Please log in", t.error.message)
        self.assertEqual(PendingSignup.query.count(), 0)

    def test_google_signup_for_existing_email_points_to_login(self):
        self._existing_user(username="first", email="x@gmail.com")
        t = self._google()
        self.assertIsInstance(t.error, DuplicateEmail)
        self.assertEqual(t.redirect_to, "/login")
        self.assertEqual(PendingSignup.query.count(), 0)


class VerificationStepTests(OnboardingTestCase):
    def test_wrong_code_mutates_nothing(self):
        t = self._local_signup()
        code = self.mailer.last_code()
        wrong = "100000" if code != "100000" else "100001"
        rejected = self.flow.submit_code(t.state, code=wrong)
        self.assertIsInstance(rejected.error, ValidationError)
        self.assertIs(rejected.stage, OnboardingStage.AWAITING_VERIFICATION)
        self.assertEqual(rejected.state, t.state)
        self.assertEqual(PendingSignup.query.one().code, code)
        self.assertEqual(User.query.count(), 0)

    def test_scenario_expired_pending_sends_user_back(self):
        t = self._local_signup()
        code = self.mailer.last_code()
        record = PendingSignup.query.one()
        record.created_at = datetime.utcnow() - timedelta(hours=1, minutes=1)
        db.session.commit()

        result = self.flow.submit_code(t.state, code=code)
        self.assertIsInstance(result.error, NotFoundError)
        self.assertEqual(result.error.code, 404)
        self.assertIs(result.stage, OnboardingStage.ANONYMOUS)
        self.assertEqual(result.redirect_to, "/signup")
        self.assertIsNone(result.state.pending_id)
        self.assertEqual(User.query.count(), 0)

    def test_code_lookup_fallback_without_session_pointer(self):
        self._local_signup()
        code = self.mailer.last_code()
        result = self.flow.submit_code(SessionOnboardingState(), code=code)
        self.assertIs(result.stage, OnboardingStage.AUTHENTICATED)
        self.assertEqual(result.user.username, "abc")

    def test_unknown_code_without_pointer(self):
        result = self.flow.submit_code(SessionOnboardingState(), code="123456")
        self.assertIsInstance(result.error, ValidationError)
        self.assertIs(result.stage, OnboardingStage.ANONYMOUS)

    def test_resend_is_idempotent(self):
        t = self._local_signup()
        record_id = t.state.pending_id
        codes = [self.mailer.last_code()]
        for _ in range(5):
            resent = self.flow.resend(t.state)
            self.assertFalse(resent.rejected)
            self.assertEqual(resent.state, t.state)
            codes.append(self.mailer.last_code())
        self.assertEqual(PendingSignup.query.count(), 1)
        self.assertEqual(PendingSignup.query.one().id, record_id)
        self.assertEqual(PendingSignup.query.one().code, codes[-1])
        done = self.flow.submit_code(t.state, code=codes[-1])
        self.assertIs(done.stage, OnboardingStage.AUTHENTICATED)

    def test_resend_with_stale_pointer(self):
        result = self.flow.resend(SessionOnboardingState(pending_id="gone"))
        self.assertIsInstance(result.error, NotFoundError)

    def test_cancel_drops_pending_and_state(self):
        t = self._local_signup()
        result = self.flow.cancel(t.state)
        self.assertIs(result.stage, OnboardingStage.ANONYMOUS)
        self.assertEqual(result.state, SessionOnboardingState())
        self.assertEqual(PendingSignup.query.count(), 0)


class ExternalSignupTests(OnboardingTestCase):
    def test_scenario_google_onboarding(self):
        t = self._google()
        self.assertIs(t.stage, OnboardingStage.AWAITING_CREDENTIALS_CHOICE)
        self.assertEqual(t.redirect_to, "/create-account")
        record = PendingSignup.query.one()
        self.assertEqual(record.source_kind, "EXTERNAL")
        self.assertEqual(record.external_identity_id, "g-1")
        self.assertEqual(t.state.temp_user.profile_image_ref, "https://img.example/g.png")

        chosen = self.flow.choose_username(t.state, username="xavier")
        self.assertFalse(chosen.rejected)
        self.assertIs(chosen.stage, OnboardingStage.AWAITING_VERIFICATION)
        self.assertIsNotNone(PendingSignup.query.one().credential_preview)

        done = self.flow.submit_code(chosen.state, code=self.mailer.last_code("x@gmail.com"))
        self.assertIs(done.stage, OnboardingStage.AUTHENTICATED)
        user = User.query.filter_by(username="xavier").one()
        self.assertEqual(user.external_identity_id, "g-1")
        self.assertEqual(user.profile_image_ref, "https://img.example/g.png")
        self.assertTrue(user.verified)
        self.assertEqual(PendingSignup.query.count(), 0)
        event = AuthSignonEvent.query.filter_by(user_id=user.id).one()
        self.assertEqual((event.provider, event.action), ("google", "register"))

    def test_scenario_known_identity_logs_in_without_pending_writes(self):
        user = self._existing_user(external_identity_id="g-1")
        with mock.patch.object(self.flow.pending, "upsert_by_email") as upsert:
            t = self._google()
        upsert.assert_not_called()
        self.assertIs(t.stage, OnboardingStage.AUTHENTICATED)
        self.assertEqual(t.user.id, user.id)
        self.assertEqual(t.notice, "Welcome back to InfoPics!")
        self.assertEqual(PendingSignup.query.count(), 0)
        self.assertEqual(self.mailer.sent, [])

    def test_known_identity_honours_post_login_redirect(self):
        self._existing_user(external_identity_id="g-1")
        t = self._google(state=SessionOnboardingState(post_login_redirect="/auth/google/link"))
        self.assertEqual(t.redirect_to, "/auth/google/link")

    def test_known_email_still_onboards_with_hint(self):
        self._existing_user(username="first", email="x@gmail.com")
        t = self._google()
        self.assertIs(t.stage, OnboardingStage.AWAITING_CREDENTIALS_CHOICE)
        self.assertIn("already uses this email", t.notice)
        self.assertIsNone(User.query.filter_by(username="first").one().external_identity_id)

    def test_choose_username_with_own_password(self):
        t = self._google()
        chosen = self.flow.choose_username(t.state, username="xavier", password="hunter22")
        self.flow.submit_code(chosen.state, code=self.mailer.last_code())
        self.assertIsNotNone(self.flow.credentials.verify_credential("xavier", "hunter22"))

    def test_choose_username_rejects_short_password(self):
        t = self._google()
        result = self.flow.choose_username(t.state, username="xavier", password="12345")
        self.assertIsInstance(result.error, ValidationError)
        self.assertIs(result.stage, OnboardingStage.AWAITING_CREDENTIALS_CHOICE)

    def test_choose_username_rejects_taken_name(self):
        self._existing_user(username="xavier")
        t = self._google()
        result = self.flow.choose_username(t.state, username="xavier")
        self.assertIsInstance(result.error, DuplicateUsername)
        self.assertIs(result.stage, OnboardingStage.AWAITING_CREDENTIALS_CHOICE)

    def test_choose_username_with_stale_pointer(self):
        result = self.flow.choose_username(
            SessionOnboardingState(pending_id="gone"), username="xavier"
        )
        self.assertIsInstance(result.error, NotFoundError)
        self.assertIs(result.stage, OnboardingStage.ANONYMOUS)

    def test_code_before_username_asks_for_username(self):
        t = self._google()
        result = self.flow.submit_code(t.state, code=self.mailer.last_code())
        self.assertIsInstance(result.error, ValidationError)
        self.assertIs(result.stage, OnboardingStage.AWAITING_CREDENTIALS_CHOICE)
        self.assertEqual(result.redirect_to, "/create-account")

    def test_scenario_concurrent_username_choice(self):
        first = self._google(subject="g-1", email="one@gmail.com")
        second = self._google(subject="g-2", email="two@gmail.com")
        first_code = self.mailer.last_code("one@gmail.com")
        second_code = self.mailer.last_code("two@gmail.com")

        first = self.flow.choose_username(first.state, username="dup")
        second = self.flow.choose_username(second.state, username="dup")
        self.assertFalse(first.rejected)
        self.assertFalse(second.rejected)

        winner = self.flow.submit_code(first.state, code=first_code)
        loser = self.flow.submit_code(second.state, code=second_code)
        self.assertIs(winner.stage, OnboardingStage.AUTHENTICATED)
        self.assertIsInstance(loser.error, ConflictError)
        self.assertIs(loser.stage, OnboardingStage.AWAITING_CREDENTIALS_CHOICE)
        self.assertEqual(User.query.filter_by(username="dup").count(), 1)
        # The loser keeps their pending record and can pick another name.
        self.assertIsNotNone(self.flow.pending.find_by_id(loser.state.pending_id))
        retry = self.flow.choose_username(loser.state, username="dup2")
        done = self.flow.submit_code(retry.state, code=second_code)
        self.assertIs(done.stage, OnboardingStage.AUTHENTICATED)

    def test_attach_intent_links_logged_in_user(self):
        user = self._existing_user()
        t = self._google(state=SessionOnboardingState(attach_intent=True), current_user=user)
        self.assertIs(t.stage, OnboardingStage.AUTHENTICATED)
        self.assertEqual(t.notice, "Google account linked.")
        self.assertEqual(user.external_identity_id, "g-1")
        event = AuthSignonEvent.query.filter_by(user_id=user.id).one()
        self.assertEqual(event.action, "link")

    def test_attach_intent_conflict_keeps_user_signed_in(self):
        self._existing_user(username="owner", email="owner@example.com", external_identity_id="g-1")
        other = self._existing_user()
        t = self._google(state=SessionOnboardingState(attach_intent=True), current_user=other)
        self.assertEqual(t.error.code, 409)
        self.assertIs(t.stage, OnboardingStage.AUTHENTICATED)
        self.assertFalse(t.state.attach_intent)


class InstantExternalAccountTests(OnboardingTestCase):
    config_overrides = {"EXTERNAL_INSTANT_ACCOUNT": True}

    def test_username_choice_finalizes_google_signup(self):
        t = self._google()
        done = self.flow.choose_username(t.state, username="xavier")
        self.assertIs(done.stage, OnboardingStage.AUTHENTICATED)
        self.assertEqual(done.user.external_identity_id, "g-1")
        self.assertEqual(PendingSignup.query.count(), 0)


class LoginTests(OnboardingTestCase):
    def test_login_success_and_failure(self):
        self._existing_user(username="abc", email="a@gmail.com")
        bad = self.flow.login(SessionOnboardingState(), identifier="abc", password="nope")
        self.assertIsInstance(bad.error, AuthError)
        self.assertEqual(bad.error.message, "Invalid username or password.")
        self.assertEqual(bad.error.code, 401)

        unknown = self.flow.login(SessionOnboardingState(), identifier="ghost", password="nope")
        self.assertEqual(unknown.error.message, bad.error.message)

        good = self.flow.login(
            SessionOnboardingState(post_login_redirect="/auth/google/link"),
            identifier="a@gmail.com",
            password="secret1",
        )
        self.assertIs(good.stage, OnboardingStage.AUTHENTICATED)
        self.assertEqual(good.redirect_to, "/auth/google/link")
        self.assertEqual(good.notice, "Welcome back to InfoPics!")
        self.assertEqual(good.state, SessionOnboardingState())

    def test_logout_clears_state(self):
        result = self.flow.logout(SessionOnboardingState(pending_id="p", attach_intent=True))
        self.assertIs(result.stage, OnboardingStage.ANONYMOUS)
        self.assertEqual(result.state, SessionOnboardingState())
        self.assertEqual(result.notice, "You are logged out!")


if __name__ == "__main__":
    unittest.main()
