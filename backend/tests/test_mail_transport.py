"""
Unit tests for the SMTP mail transport: configuration, classification and client caching.
"""
import smtplib
import socket

import pytest

import core.config as config_module
from conftest import smtp_settings
from core.config import reload_settings
from services.mail_transport import (
    ClientCache,
    DeliveryKind,
    MailTransport,
    SMTPConfigError,
    classify_failure,
    load_smtp_config,
    render_otp_email,
    strip_html,
)


def _transport(smtp, config):
    return MailTransport(ClientCache(client_factory=smtp.client_factory), config_provider=lambda: config)


class TestConfiguration:

    def test_loads_and_strips_values(self):
        config = load_smtp_config(smtp_settings(SMTP_HOST=" smtp.gmail.com ", SMTP_PORT=" 465 "))
        assert config.host == "smtp.gmail.com"
        assert config.port == 465
        assert config.sender == "loans.portal@gmail.com"

    def test_integral_float_port_accepted(self):
        assert load_smtp_config(smtp_settings(SMTP_PORT="587.0")).port == 587
        assert load_smtp_config(smtp_settings(SMTP_PORT="65535")).port == 65535

    def test_out_of_range_port_is_no_config(self, smtp):
        result = _transport(smtp, smtp_settings(SMTP_PORT="70000")).send_otp("a@example.com", "111222", "login")

        assert result.kind == DeliveryKind.NO_CONFIG
        assert smtp.attempts == 0

    @pytest.mark.parametrize("overrides", [
        {"SMTP_HOST": None},
        {"SMTP_HOST": "   "},
        {"SMTP_PASSWORD": ""},
        {"SMTP_PORT": "abc"},
        {"SMTP_PORT": "0"},
        {"SMTP_PORT": "-25"},
        {"SMTP_PORT": "70000"},
        {"SMTP_PORT": "587.5"},
        {"SMTP_HOST": "localhost"},
        {"SMTP_HOST": "127.0.0.1"},
        {"SMTP_HOST": "::1"},
    ])
    def test_unusable_settings_raise(self, overrides):
        with pytest.raises(SMTPConfigError):
            load_smtp_config(smtp_settings(**overrides))

    def test_fingerprint_tracks_credentials(self):
        base = load_smtp_config(smtp_settings())
        assert base.fingerprint == load_smtp_config(smtp_settings(SMTP_FROM_NAME="Other")).fingerprint
        assert base.fingerprint != load_smtp_config(smtp_settings(SMTP_PASSWORD="app-password-2")).fingerprint

    def test_password_not_in_repr(self):
        assert "app-password-1" not in repr(load_smtp_config(smtp_settings()))


class TestSend:

    def test_blank_host_is_no_config_without_network(self, smtp):
        transport = _transport(smtp, smtp_settings(SMTP_HOST=""))

        for _ in range(3):
            result = transport.send("someone@example.com", "Hello", "<p>Hi</p>")
            assert not result.success
            assert result.kind == DeliveryKind.NO_CONFIG
        assert smtp.attempts == 0

    def test_invalid_address_makes_no_attempt(self, smtp, transport):
        result = transport.send_otp("not-an-email", "123456", "verification")

        assert not result.success
        assert result.kind == DeliveryKind.INVALID_ADDRESS
        assert smtp.attempts == 0

    def test_missing_fields(self, smtp, transport):
        result = transport.send("", "Subject", "<p>x</p>")
        assert result.kind == DeliveryKind.MISSING_FIELDS
        assert smtp.attempts == 0

    def test_no_config_reported_before_missing_fields(self, smtp):
        result = _transport(smtp, smtp_settings(SMTP_PORT=None)).send(None, None, None)
        assert result.kind == DeliveryKind.NO_CONFIG

    def test_successful_send_uses_starttls(self, smtp, transport):
        result = transport.send_otp("applicant@example.com", "482913", "password_reset")

        assert result.success
        assert result.message_id
        assert smtp.connections[0]["port"] == 587
        assert not smtp.connections[0]["implicit_tls"]
        assert smtp.starttls_calls == 1
        assert smtp.logins == [("loans.portal@gmail.com", "app-password-1")]
        message = smtp.sent[0]
        assert message["To"] == "applicant@example.com"
        assert message["Subject"] == "Your OTP for password reset"
        assert smtp.last_code() == "482913"

    def test_port_465_uses_implicit_tls(self, smtp):
        result = _transport(smtp, smtp_settings(SMTP_PORT="465")).send_otp("a@example.com", "111222", "login")

        assert result.success
        assert smtp.connections[0]["implicit_tls"]
        assert smtp.starttls_calls == 0

    def test_submission_port_requires_starttls(self, smtp, transport):
        smtp.offer_starttls = False

        result = transport.send_otp("a@example.com", "111222", "login")

        assert result.kind == DeliveryKind.CONNECTION
        assert smtp.logins == []

    def test_auth_failure_gets_app_password_hint(self, smtp, transport):
        smtp.login_error = smtplib.SMTPAuthenticationError(535, b"5.7.8 Username and Password not accepted")

        result = transport.send_otp("a@example.com", "111222", "verification")

        assert result.kind == DeliveryKind.AUTH
        assert "App Password" in result.hint
        assert result.config == {"host": "smtp.gmail.com", "port": 587, "user": "loa***"}

    def test_single_attempt_per_send(self, smtp, transport):
        smtp.send_error = smtplib.SMTPServerDisconnected("Connection unexpectedly closed")

        result = transport.send_otp("a@example.com", "111222", "verification")

        assert result.kind == DeliveryKind.CONNECTION
        assert smtp.attempts == 1


class TestClientCache:

    def test_client_reused_until_settings_change(self, smtp):
        config = smtp_settings()
        built = []

        def factory(cfg):
            built.append(cfg)
            return smtp.client_factory(cfg)

        transport = MailTransport(ClientCache(client_factory=factory), config_provider=lambda: config)
        transport.send_otp("a@example.com", "111111", "verification")
        transport.send_otp("b@example.com", "222222", "verification")
        assert len(built) == 1

        config.SMTP_PASSWORD = "rotated-password"
        transport.send_otp("c@example.com", "333333", "verification")

        assert len(built) == 2
        assert smtp.logins[-1] == ("loans.portal@gmail.com", "rotated-password")

    def test_invalidate_forces_rebuild(self, smtp):
        cache = ClientCache(client_factory=smtp.client_factory)
        config = load_smtp_config(smtp_settings())
        first = cache.refresh_if_changed(config)
        assert cache.refresh_if_changed(config) is first

        cache.invalidate()

        assert cache.refresh_if_changed(config) is not first


class TestClassification:

    @pytest.fixture
    def config(self):
        return load_smtp_config(smtp_settings(SMTP_HOST="mail.lender.example", SMTP_USERNAME="otp@lender.example"))

    @pytest.mark.parametrize("exc, kind", [
        (smtplib.SMTPAuthenticationError(535, b"bad credentials"), DeliveryKind.AUTH),
        (smtplib.SMTPRecipientsRefused({"x@y.z": (550, b"no such user")}), DeliveryKind.ENVELOPE),
        (smtplib.SMTPSenderRefused(553, b"sender rejected", "otp@lender.example"), DeliveryKind.ENVELOPE),
        (socket.timeout("timed out"), DeliveryKind.TIMEOUT),
        (TimeoutError("timed out"), DeliveryKind.TIMEOUT),
        (smtplib.SMTPConnectError(421, b"service not available"), DeliveryKind.CONNECTION),
        (ConnectionRefusedError(111, "Connection refused"), DeliveryKind.CONNECTION),
        (socket.gaierror(-2, "Name or service not known"), DeliveryKind.CONNECTION),
        (smtplib.SMTPDataError(554, b"message rejected"), DeliveryKind.UNKNOWN),
        (ValueError("boom"), DeliveryKind.UNKNOWN),
    ])
    def test_kinds(self, config, exc, kind):
        assert classify_failure(exc, config).kind == kind

    def test_generic_auth_hint(self, config):
        result = classify_failure(smtplib.SMTPAuthenticationError(535, b"no"), config)
        assert "App Password" not in result.hint


class TestDiagnosis:

    def test_masks_credentials(self, smtp):
        diagnosis = _transport(smtp, smtp_settings()).diagnose()

        assert diagnosis == {
            "configValid": True,
            "error": None,
            "emailHost": "smtp.gmail.com",
            "emailPort": "587",
            "emailUser": "loa***",
            "emailPass": "SET",
        }

    def test_reports_missing_settings(self, smtp):
        diagnosis = _transport(smtp, smtp_settings(SMTP_USERNAME=None, SMTP_PASSWORD=None)).diagnose()

        assert not diagnosis["configValid"]
        assert "SMTP_USERNAME" in diagnosis["error"]
        assert diagnosis["emailUser"] == "NOT SET"
        assert diagnosis["emailPass"] == "NOT SET"

    def test_verify_connection(self, smtp, transport):
        assert transport.verify_connection().success
        assert smtp.noops == 1
        assert smtp.sent == []


class TestRendering:

    def test_strip_html(self):
        assert strip_html("<p>Your code is <b>123456</b> &amp; expires soon</p>") == "Your code is 123456 & expires soon"
        assert strip_html(None) == ""

    def test_otp_email_content(self):
        subject, html_body, text_body = render_otp_email("654321", "application", 10)

        assert subject == "Your OTP for application"
        assert "654321" in html_body
        assert "expire in 10 minutes" in text_body


class TestSettingsReload:

    @pytest.fixture
    def env(self, monkeypatch):
        # reload_settings rebinds the module-level instance; the original comes back on teardown
        monkeypatch.setattr(config_module, "settings", config_module.settings)
        monkeypatch.setenv("SMTP_HOST", "smtp.gmail.com")
        monkeypatch.setenv("SMTP_PORT", "587")
        monkeypatch.setenv("SMTP_USERNAME", "u@example.com")
        monkeypatch.setenv("SMTP_PASSWORD", "old")
        return monkeypatch

    @pytest.fixture
    def builds(self):
        return []

    @pytest.fixture
    def live_transport(self, smtp, builds):
        def factory(cfg):
            builds.append(cfg)
            return smtp.client_factory(cfg)

        return MailTransport(ClientCache(client_factory=factory), reloader=reload_settings)

    def test_missing_settings_are_re_read(self, env, smtp, live_transport):
        result = live_transport.send_otp("a@example.com", "111111", "verification")

        assert result.success
        assert smtp.logins == [("u@example.com", "old")]

    def test_rejected_credentials_pick_up_rotation(self, env, smtp, builds, live_transport):
        assert live_transport.send_otp("a@example.com", "111111", "verification").success

        env.setenv("SMTP_PASSWORD", "new")
        smtp.login_error = smtplib.SMTPAuthenticationError(535, b"5.7.8 Username and Password not accepted")
        assert live_transport.send_otp("a@example.com", "222222", "verification").kind == DeliveryKind.AUTH

        smtp.login_error = None
        assert live_transport.send_otp("a@example.com", "333333", "verification").success
        assert smtp.logins[-1] == ("u@example.com", "new")
        assert len(builds) == 2

    def test_without_reloader_settings_stay_put(self, env, smtp):
        transport = MailTransport(ClientCache(client_factory=smtp.client_factory))

        result = transport.send_otp("a@example.com", "111111", "verification")

        assert result.kind == DeliveryKind.NO_CONFIG
        assert smtp.attempts == 0

    def test_app_transport_reloads_settings(self):
        from main import app

        assert app.state.mail_transport._reloader is reload_settings
