import pytest

from appliance_installer.errors import LayoutError
from appliance_installer.lib.partition import plan_layout
from appliance_installer.models import MIB, PartitionRequest, parse_size

GIB = 1024 * MIB


def default_requests():
    return [
        PartitionRequest("EFI", "vfat", 256 * MIB, "EFI", esp=True),
        PartitionRequest("root", "ext4", 3 * GIB, "root"),
        PartitionRequest("overlay", "ext4", None, "overlay", min_size=512 * MIB),
    ]


class TestPlanLayout:
    def test_default_image_layout(self):
        layout = plan_layout(4 * GIB, default_requests())

        assert [(p.start_mib, p.end_mib) for p in layout.partitions] == [(1, 257), (257, 3329), (3329, 4095)]
        assert layout.esp.name == "EFI"
        assert layout.by_name("overlay").size == 766 * MIB

    @pytest.mark.parametrize("total", [2 * GIB, 4 * GIB, 7 * GIB + 123456, 32 * GIB])
    def test_partitions_are_sorted_disjoint_and_aligned(self, total):
        reqs = [
            PartitionRequest("EFI", "vfat", 300 * MIB + 17, "EFI", esp=True),
            PartitionRequest("root", "ext4", 1 * GIB, "root"),
            PartitionRequest("overlay", "ext4", None, "overlay"),
        ]
        layout = plan_layout(total, reqs)
        parts = layout.partitions

        assert sum(1 for p in parts if p.esp) == 1
        for p in parts:
            assert p.start % MIB == 0 and p.end % MIB == 0
            assert p.end > p.start
        for a, b in zip(parts, parts[1:]):
            assert a.end <= b.start
        assert parts[0].start >= MIB
        assert parts[-1].end <= total - MIB

    def test_rest_partition_may_sit_in_the_middle(self):
        reqs = [
            PartitionRequest("EFI", "vfat", 256 * MIB, "EFI", esp=True),
            PartitionRequest("data", "ext4", None, "data"),
            PartitionRequest("tail", "ext4", 64 * MIB, "tail"),
        ]
        layout = plan_layout(1 * GIB, reqs)
        assert layout.by_name("tail").end_mib == 1023
        assert layout.by_name("data").end == layout.by_name("tail").start

    def test_two_rest_requests_rejected(self):
        reqs = default_requests() + [PartitionRequest("extra", "ext4", None, "extra")]
        with pytest.raises(LayoutError):
            plan_layout(4 * GIB, reqs)

    def test_no_rest_request_rejected(self):
        reqs = default_requests()[:2]
        with pytest.raises(LayoutError):
            plan_layout(4 * GIB, reqs)

    def test_oversized_absolute_sizes_rejected(self):
        with pytest.raises(LayoutError, match="do not fit"):
            plan_layout(3 * GIB, default_requests())

    @pytest.mark.parametrize("esp_flags", [(False, False, False), (True, True, False)])
    def test_esp_must_be_unique(self, esp_flags):
        reqs = [
            PartitionRequest(r.name, r.fstype, r.size, r.label, esp=flag, min_size=r.min_size)
            for r, flag in zip(default_requests(), esp_flags)
        ]
        with pytest.raises(LayoutError, match="ESP"):
            plan_layout(4 * GIB, reqs)

    def test_rest_below_minimum_rejected(self):
        with pytest.raises(LayoutError, match="minimum"):
            plan_layout(3 * GIB + 512 * MIB, default_requests())

    def test_duplicate_names_rejected(self):
        reqs = default_requests()
        reqs[1] = PartitionRequest("EFI", "ext4", GIB, "root")
        with pytest.raises(LayoutError, match="Duplicate"):
            plan_layout(4 * GIB, reqs)


@pytest.mark.parametrize(
    "value,expected",
    [("256M", 256 * MIB), ("3G", 3 * GIB), ("4GiB", 4 * GIB), ("512MB", 512 * MIB), (1024, 1024), ("0", 0)],
)
def test_parse_size(value, expected):
    assert parse_size(value) == expected
