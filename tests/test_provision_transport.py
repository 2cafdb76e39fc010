"""Tests for provision/transport.py - USB link stabilization."""

from unittest.mock import patch

import pytest

from tinderbox.command import CmdResult
from tinderbox.config import Settings
from tinderbox.provision.errors import VpnActiveError
from tinderbox.provision.transport import (
    OFFLOAD_RULE_NAME,
    RENAME_RULE_NAME,
    LinkInfo,
    active_vpn_interfaces,
    check_vpn_conflicts,
    find_transport_interface,
    install_udev_rules,
    overlay_active,
    parse_ip_links,
    parse_offloads,
    probe_target_payload,
    restore_link_offloads,
    wait_for_target_shell,
)

IP_LINK_OUTPUT = (
    "1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue state UNKNOWN mode DEFAULT\n"
    "2: enp3s0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc fq_codel state UP mode DEFAULT\n"
    "5: usb0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc fq_codel state UP mode DEFAULT\n"
    "6: wg0: <POINTOPOINT,NOARP,UP,LOWER_UP> mtu 1420 qdisc noqueue state UP mode DEFAULT\n"
    "7: ztabcdef12: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 2800 state UNKNOWN mode DEFAULT\n"
    "8: veth1@if7: <BROADCAST,MULTICAST> mtu 1500 state DOWN mode DEFAULT\n"
)

ETHTOOL_OUTPUT = (
    "Features for usb0:\n"
    "rx-checksumming: off [fixed]\n"
    "tx-checksumming: on\n"
    "scatter-gather: on\n"
    "tcp-segmentation-offload: off\n"
    "generic-segmentation-offload: on\n"
    "generic-receive-offload: on\n"
    "large-receive-offload: off [fixed]\n"
)


def result(stdout="", returncode=0):
    return CmdResult(["cmd"], returncode, stdout, "")


class TestParseIpLinks:
    """Tests for parse_ip_links."""

    def test_names_and_states(self):
        links = parse_ip_links(IP_LINK_OUTPUT)
        assert LinkInfo("usb0", "UP") in links
        assert LinkInfo("lo", "UNKNOWN") in links
        assert LinkInfo("veth1", "DOWN") in links

    def test_ignores_noise(self):
        assert parse_ip_links("\n    link/ether 00:11\n") == []


class TestFindTransportInterface:
    """Tests for find_transport_interface."""

    def test_preferred_name(self):
        assert find_transport_interface(parse_ip_links(IP_LINK_OUTPUT)) == "usb0"

    def test_enx_fallback(self):
        links = [LinkInfo("eth0", "UP"), LinkInfo("enx0a1b2c3d4e5f", "UP")]
        assert find_transport_interface(links) == "enx0a1b2c3d4e5f"

    def test_none(self):
        assert find_transport_interface([LinkInfo("eth0", "UP")]) is None


class TestVpnConflicts:
    """Tests for VPN and overlay detection."""

    def test_active_vpn(self):
        links = parse_ip_links(IP_LINK_OUTPUT)
        assert active_vpn_interfaces(links) == ["wg0"]
        with pytest.raises(VpnActiveError) as exc_info:
            check_vpn_conflicts(links)
        assert exc_info.value.error_code == "VPN_ACTIVE"

    def test_down_vpn_allowed(self):
        check_vpn_conflicts([LinkInfo("tun0", "DOWN")])

    def test_overlay(self):
        assert overlay_active(parse_ip_links(IP_LINK_OUTPUT)) is True
        assert overlay_active([LinkInfo("ztabc", "DOWN")]) is False

    def test_tailscale_refused_zerotier_paused(self):
        """Tailscale is a refusing VPN; the ZeroTier overlay is only paused."""
        links = [LinkInfo("tailscale0", "UNKNOWN"), LinkInfo("ztabc", "UNKNOWN")]
        assert active_vpn_interfaces(links) == ["tailscale0"]
        assert overlay_active(links) is True
        assert active_vpn_interfaces([LinkInfo("ztabc", "UNKNOWN")]) == []


class TestInstallUdevRules:
    """Tests for install_udev_rules."""

    def test_writes_then_idempotent(self, tmp_path):
        """A second install changes nothing and does not reload udev."""
        rules_dir = tmp_path / "rules.d"
        helper = tmp_path / "sbin" / "offloads.sh"

        with patch("tinderbox.provision.transport.run_cmd", return_value=result()) as mock_run:
            assert install_udev_rules("usb0", rules_dir, helper) is True
            assert mock_run.call_count == 2
            mock_run.reset_mock()

            assert install_udev_rules("usb0", rules_dir, helper) is False
            mock_run.assert_not_called()

        assert 'NAME="usb0"' in (rules_dir / RENAME_RULE_NAME).read_text()
        assert str(helper) in (rules_dir / OFFLOAD_RULE_NAME).read_text()
        assert helper.stat().st_mode & 0o111
        assert "tso off" in helper.read_text()


class TestOffloads:
    """Tests for offload parsing and restore."""

    def test_parse(self):
        state = parse_offloads(ETHTOOL_OUTPUT)
        assert state == {
            "rx": False,
            "tx": True,
            "sg": True,
            "tso": False,
            "gso": True,
            "gro": True,
            "lro": False,
        }

    def test_restore_argv(self):
        with patch("tinderbox.provision.transport.run_cmd", return_value=result()) as mock_run:
            assert restore_link_offloads("usb0", {"tso": True, "gro": False}) is True
        mock_run.assert_called_once_with(["ethtool", "-K", "usb0", "tso", "on", "gro", "off"])

    def test_restore_empty_noop(self):
        with patch("tinderbox.provision.transport.run_cmd") as mock_run:
            assert restore_link_offloads("usb0", {}) is True
        mock_run.assert_not_called()


class TestTargetProbe:
    """Tests for wait_for_target_shell and probe_target_payload."""

    def test_shell_times_out(self):
        settings = Settings(target_ssh_timeout=5)
        ticks = iter([0.0, 3.0, 6.0])

        with patch("tinderbox.provision.transport.run_cmd", return_value=result("", 255)):
            ok = wait_for_target_shell(settings, sleep=lambda s: None, clock=lambda: next(ticks))

        assert ok is False

    def test_probe_reads_payload(self):
        settings = Settings(payload_path="/mnt/external/system.img")
        responses = [result("ok\n"), result("-rw-r--r-- 1 root root 14G system.img\n")]

        with patch("tinderbox.provision.transport.run_cmd", side_effect=responses) as mock_run:
            assert probe_target_payload(settings) is True

        remote = mock_run.call_args_list[1].args[0][-1]
        assert "test -r /mnt/external/system.img" in remote
        assert "dd if=/mnt/external/system.img" in remote

    def test_probe_failure(self):
        responses = [result("ok\n"), result("", 1)]
        with patch("tinderbox.provision.transport.run_cmd", side_effect=responses):
            assert probe_target_payload(Settings()) is False
