# SPDX-License-Identifier: LGPL-3.0-or-later
import pytest

from snap2vm.array.models import ArrayHost, HostMapping
from snap2vm.recovery.topology import TopologyResolver, normalize_wwn
from snap2vm.vmware.models import HostInitiators
from fakes.fake_logger import FakeLogger

IQN = "iqn.1998-01.com.vmware:esxi01-4f3a"


@pytest.mark.unit
class TestNormalizeWwn:
    @pytest.mark.parametrize(
        "raw",
        ["21:00:00:24:FF:4C:C3:D0", "21-00-00-24-ff-4c-c3-d0", "0x21000024FF4CC3D0", "21000024ff4cc3d0"],
    )
    def test_forms(self, raw):
        assert normalize_wwn(raw) == "21000024ff4cc3d0"

    @pytest.mark.parametrize("raw", ["", "21:00", "zz00000000000000", "21000024ff4cc3d0ff"])
    def test_rejects_non_wwn(self, raw):
        assert normalize_wwn(raw) is None


@pytest.mark.unit
class TestTopologyResolver:
    def test_fc_match_in_host_group(self):
        inv = [ArrayHost("esxi01-fc", wwns=("21:00:00:24:FF:4C:C3:D0",), host_group="DR-Cluster")]
        r = TopologyResolver(FakeLogger(), inv)

        mapping = r.resolve(HostInitiators("esxi01", wwns=("21000024ff4cc3d0",)))

        assert mapping == HostMapping(HostMapping.HOST_GROUP, "DR-Cluster")
        assert mapping.source == "inferred"

    def test_iqn_match_single_host_warns(self):
        log = FakeLogger()
        r = TopologyResolver(log, [ArrayHost("esxi01-iscsi", iqns=(IQN,))])

        mapping = r.resolve(HostInitiators("esxi01", iqns=(IQN,)))

        assert mapping == HostMapping(HostMapping.HOST, "esxi01-iscsi")
        assert any("only be visible" in m for m in log.messages("warning"))

    def test_iqn_is_compared_verbatim(self):
        r = TopologyResolver(FakeLogger(), [ArrayHost("esxi01-iscsi", iqns=(IQN.upper(),))])

        assert r.resolve(HostInitiators("esxi01", iqns=(IQN,))) is None

    def test_first_match_wins_never_merged(self):
        inv = [
            ArrayHost("old-esxi01", wwns=("21:00:00:24:ff:4c:c3:d0",), host_group="Retired"),
            ArrayHost("esxi01", wwns=("21:00:00:24:ff:4c:c3:d0", "21:00:00:24:ff:4c:c3:d1"), host_group="DR-Cluster"),
        ]
        r = TopologyResolver(FakeLogger(), inv)

        mapping = r.resolve(HostInitiators("esxi01", wwns=("21000024ff4cc3d1", "21000024ff4cc3d0")))

        assert mapping.name == "Retired"

    def test_no_match_returns_none(self):
        r = TopologyResolver(FakeLogger(), [ArrayHost("esxi09", wwns=("21:00:00:24:ff:00:00:09",))])

        assert r.resolve(HostInitiators("esxi01", wwns=("21000024ff4cc3d0",))) is None

    def test_host_without_initiators(self):
        r = TopologyResolver(FakeLogger(), [ArrayHost("esxi01")])

        assert r.match_host(HostInitiators("esxi01")) is None

    def test_deterministic(self):
        inv = [
            ArrayHost("a", wwns=("21:00:00:24:ff:4c:c3:d0",), host_group="G1"),
            ArrayHost("b", iqns=(IQN,), host_group="G2"),
        ]
        ini = HostInitiators("esxi01", wwns=("21000024ff4cc3d0",), iqns=(IQN,))

        results = {TopologyResolver(FakeLogger(), inv).resolve(ini) for _ in range(5)}

        assert results == {HostMapping(HostMapping.HOST_GROUP, "G1")}
