"""
Unit tests for iSCSI session management.
"""

from unittest.mock import MagicMock, patch

import pytest

from truenas_block.exceptions import InitiatorError
from truenas_block.initiator.iscsi import IscsiSessionManager, portal_key

IQN = "iqn.2005-10.org.freenas.ctl:vms"
PORTAL_A = "192.168.10.5:3260"
PORTAL_B = "192.168.10.6:3260"


class FakeIscsiadm:
    """subprocess.run double emulating iscsiadm session state."""

    def __init__(self, active=(), failing=(), silent=(), present=()):
        self.active = set(active)
        self.failing = set(failing)
        self.silent = set(silent)
        self.present = set(present)
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if cmd == ["iscsiadm", "-m", "session"]:
            if not self.active:
                return MagicMock(returncode=21, stdout="", stderr="iscsiadm: No active sessions.")
            lines = [f"tcp: [{i}] {p},1 {IQN} (non-flash)" for i, p in enumerate(sorted(self.active), 1)]
            return MagicMock(returncode=0, stdout="\n".join(lines) + "\n", stderr="")
        if "--login" in cmd:
            portal = cmd[cmd.index("-p") + 1]
            if portal in self.failing:
                return MagicMock(returncode=8, stdout="", stderr="iscsiadm: Could not log into all portals")
            if portal in self.present:
                self.active.add(portal)
                return MagicMock(returncode=15, stdout="", stderr="iscsiadm: default: 1 session requested, but 1 already present.")
            if portal not in self.silent:
                self.active.add(portal)
        return MagicMock(returncode=0, stdout="", stderr="")

    def logins(self):
        return [c[c.index("-p") + 1] for c in self.calls if "--login" in c]


@pytest.fixture
def two_portal_config(make_config):
    return make_config(portals=(PORTAL_B,))


def run_ensure(config, fake, probe=None):
    manager = IscsiSessionManager(config, probe=probe or MagicMock())
    with patch("subprocess.run", side_effect=fake):
        return manager.ensure_sessions()


@pytest.mark.unit
@pytest.mark.parametrize(
    "portal,expected",
    [
        ("192.168.10.5:3260,1", "192.168.10.5:3260"),
        ("192.168.10.5", "192.168.10.5:3260"),
        ("[fd00::5]:3260,2", "[fd00::5]:3260"),
        (" truenas.local:3261 ", "truenas.local:3261"),
    ],
)
def test_portal_key(portal, expected):
    assert portal_key(portal) == expected


class TestEnsureSessions:
    """Tests for IscsiSessionManager.ensure_sessions."""

    @pytest.mark.unit
    def test_sessions_already_present(self, two_portal_config, no_sleep):
        """Test no login is attempted when every portal has a session."""
        fake = FakeIscsiadm(active=[PORTAL_A, PORTAL_B])

        report = run_ensure(two_portal_config, fake)

        assert report.connected == [PORTAL_A, PORTAL_B]
        assert report.complete
        assert fake.logins() == []

    @pytest.mark.unit
    def test_logs_in_to_every_portal(self, two_portal_config, no_sleep):
        fake = FakeIscsiadm()
        probe = MagicMock()

        report = run_ensure(two_portal_config, fake, probe)

        assert report.connected == [PORTAL_A, PORTAL_B]
        assert fake.logins() == [PORTAL_A, PORTAL_B]
        probe.assert_any_call("192.168.10.6", 3260)
        assert ["iscsiadm", "-m", "discovery", "-t", "sendtargets", "-p", PORTAL_A] in fake.calls
        assert ["iscsiadm", "-m", "node", "-T", IQN, "-p", PORTAL_B, "--login"] in fake.calls

    @pytest.mark.unit
    def test_one_portal_failing_is_degraded(self, two_portal_config, no_sleep):
        """Test a failing portal is retried once and reported without failing the call."""
        fake = FakeIscsiadm(failing=[PORTAL_B])

        with patch("truenas_block.initiator.iscsi.LOG") as mock_log:
            report = run_ensure(two_portal_config, fake)

        assert report.connected == [PORTAL_A]
        assert list(report.failed) == [PORTAL_B]
        assert not report.complete
        assert fake.logins() == [PORTAL_A, PORTAL_B, PORTAL_B]
        assert "degraded" in mock_log.warning.call_args[0][0]

    @pytest.mark.unit
    def test_login_without_session_is_not_counted(self, two_portal_config, no_sleep):
        """Test each portal is verified against the session list after login."""
        fake = FakeIscsiadm(silent=[PORTAL_B])

        report = run_ensure(two_portal_config, fake)

        assert report.connected == [PORTAL_A]
        assert report.failed == {PORTAL_B: "no session after login"}

    @pytest.mark.unit
    def test_already_present_is_success(self, config, no_sleep):
        fake = FakeIscsiadm(present=[PORTAL_A])

        report = run_ensure(config, fake)

        assert report.connected == [PORTAL_A]

    @pytest.mark.unit
    def test_unreachable_portal(self, two_portal_config, no_sleep):
        def probe(host, port):
            if host == "192.168.10.6":
                raise InitiatorError(f"iSCSI portal {host}:{port} is not reachable")

        fake = FakeIscsiadm()

        report = run_ensure(two_portal_config, fake, probe)

        assert report.connected == [PORTAL_A]
        assert "not reachable" in report.failed[PORTAL_B]
        assert fake.logins() == [PORTAL_A]

    @pytest.mark.unit
    def test_no_portal_connects(self, two_portal_config, no_sleep):
        fake = FakeIscsiadm(failing=[PORTAL_A, PORTAL_B])

        with pytest.raises(InitiatorError, match="on any portal"):
            run_ensure(two_portal_config, fake)

    @pytest.mark.unit
    def test_chap_settings_applied(self, make_config, no_sleep):
        config = make_config(chap_user="initiator", chap_password="s3cret")
        fake = FakeIscsiadm()

        run_ensure(config, fake)

        node = ["iscsiadm", "-m", "node", "-T", IQN, "-p", PORTAL_A, "-o", "update", "-n"]
        assert node + ["node.session.auth.authmethod", "-v", "CHAP"] in fake.calls
        assert node + ["node.session.auth.username", "-v", "initiator"] in fake.calls
        assert node + ["node.session.auth.password", "-v", "s3cret"] in fake.calls


class TestSessionQueries:
    """Tests for session inspection helpers."""

    @pytest.mark.unit
    def test_active_portals_filters_target(self, config, mock_subprocess):
        mock_subprocess.return_value = MagicMock(
            returncode=0,
            stdout=(
                f"tcp: [1] 192.168.10.5:3260,1 {IQN} (non-flash)\n"
                "tcp: [2] 192.168.10.9:3260,1 iqn.2005-10.org.freenas.ctl:other (non-flash)\n"
                f"tcp: [3] [fd00::5]:3260,1 {IQN} (non-flash)\n"
            ),
            stderr="",
        )

        assert IscsiSessionManager(config).active_portals() == {PORTAL_A, "[fd00::5]:3260"}

    @pytest.mark.unit
    def test_no_sessions(self, config, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=21, stdout="", stderr="No active sessions")
        assert IscsiSessionManager(config).active_portals() == set()

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "output,expected",
        [
            (f"Target: {IQN} (non-flash)\n\tCurrent Portal: 192.168.10.5:3260,1\n", True),
            (f"Target: {IQN} (non-flash)\n\t\tscsi3 Channel 00 Id 0 Lun: 0\n", False),
            ("Target: iqn.2005-10.org.freenas.ctl:other (non-flash)\n", False),
        ],
    )
    def test_session_has_no_luns(self, config, mock_subprocess, output, expected):
        mock_subprocess.return_value = MagicMock(returncode=0, stdout=output, stderr="")
        assert IscsiSessionManager(config).session_has_no_luns() is expected

    @pytest.mark.unit
    def test_target_discoverable(self, config, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=0, stdout=f"{PORTAL_A},1 {IQN}\n", stderr="")

        assert IscsiSessionManager(config).target_discoverable()
        assert mock_subprocess.call_args[0][0] == ["iscsiadm", "-m", "discovery", "-t", "sendtargets", "-p", PORTAL_A]

    @pytest.mark.unit
    def test_target_not_discoverable(self, config, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=0, stdout="", stderr="")
        assert not IscsiSessionManager(config).target_discoverable()

    @pytest.mark.unit
    def test_logout_all(self, two_portal_config, mock_subprocess):
        IscsiSessionManager(two_portal_config).logout_all()

        commands = [c[0][0] for c in mock_subprocess.call_args_list]
        assert commands == [
            ["iscsiadm", "-m", "node", "-p", PORTAL_A, "--targetname", IQN, "--logout"],
            ["iscsiadm", "-m", "node", "-p", PORTAL_A, "--targetname", IQN, "-o", "delete"],
            ["iscsiadm", "-m", "node", "-p", PORTAL_B, "--targetname", IQN, "--logout"],
            ["iscsiadm", "-m", "node", "-p", PORTAL_B, "--targetname", IQN, "-o", "delete"],
        ]

    @pytest.mark.unit
    def test_rescan_reloads_multipath(self, config, mock_subprocess, no_sleep):
        IscsiSessionManager(config).rescan()

        commands = [c[0][0] for c in mock_subprocess.call_args_list]
        assert commands[:2] == [["iscsiadm", "-m", "session", "-R"], ["multipath", "-r"]]
        assert commands[2][:2] == ["udevadm", "settle"]
