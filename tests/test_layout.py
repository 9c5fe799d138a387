"""Tests for image/layout.py."""

import pytest

from opi_imagegen.errors import LayoutError
from opi_imagegen.image.layout import (
    DEFAULT_LAYOUT,
    IDBLOADER,
    LAYOUTS,
    RK3588_GPT,
    RK3588_SIMPLE,
    SECTOR_SIZE,
    PartitionLayout,
    PartitionSpec,
    RawPlacement,
    check_raw_write,
    compose_sgdisk_commands,
    get_layout,
)


class TestLayoutInvariants:
    """Every shipped layout must satisfy the layout invariants."""

    @pytest.mark.parametrize("name", sorted(LAYOUTS))
    def test_validates(self, name):
        """Shipped layouts should pass validation."""
        get_layout(name).validate()

    @pytest.mark.parametrize("name", sorted(LAYOUTS))
    def test_ordered_and_disjoint(self, name):
        """Partitions should be in order and never overlap."""
        parts = LAYOUTS[name].partitions
        for previous, current in zip(parts, parts[1:]):
            assert previous.end_sector is not None
            assert current.start_sector > previous.end_sector

    @pytest.mark.parametrize("name", sorted(LAYOUTS))
    def test_raw_writes_before_filesystems(self, name):
        """Raw bootloader writes should land before any filesystem."""
        layout = LAYOUTS[name]
        for placement in layout.all_placements():
            assert placement.start_sector < layout.first_filesystem_sector

    @pytest.mark.parametrize("name", sorted(LAYOUTS))
    def test_only_last_partition_open_ended(self, name):
        """Only the rootfs partition may extend to the end of the image."""
        parts = LAYOUTS[name].partitions
        assert parts[-1].end_sector is None
        assert all(p.end_sector is not None for p in parts[:-1])


class TestRk3588Gpt:
    """Tests for the primary five-partition layout."""

    def test_default_layout(self):
        """The five-partition layout should be the default."""
        assert DEFAULT_LAYOUT == RK3588_GPT.name
        assert get_layout() is RK3588_GPT

    def test_partitions(self):
        """Should define loader1, loader2, trust, boot and rootfs."""
        names = [p.name for p in RK3588_GPT.partitions]

        assert names == ["loader1", "loader2", "trust", "boot", "rootfs"]

    def test_boot_partition(self):
        """Boot is partition 4, vfat, with the bootable flag."""
        boot = RK3588_GPT.boot_partition

        assert boot.number == 4
        assert boot.filesystem == "vfat"
        assert boot.boot_flag
        assert boot.label == "BOOT"

    def test_root_partition(self):
        """Rootfs is partition 5, ext4, filling the rest of the image."""
        root = RK3588_GPT.root_partition

        assert root.number == 5
        assert root.filesystem == "ext4"
        assert root.end_sector is None

    def test_raw_writes(self):
        """idbloader at sector 64, u-boot.itb at sector 16384."""
        placements = {r.filename: r.start_sector for r in RK3588_GPT.raw_writes}

        assert placements == {"idbloader.img": 64, "u-boot.itb": 16384}
        assert RK3588_GPT.combined_write.start_sector == 64

    def test_fixed_span(self):
        """Fixed partitions plus the backup GPT take 273 MiB."""
        assert RK3588_GPT.fixed_span_mb == 273

    def test_simple_layout_boot_number(self):
        """The two-partition layout boots from partition 1."""
        assert RK3588_SIMPLE.boot_partition.number == 1
        assert RK3588_SIMPLE.root_partition.number == 2

    def test_to_dict(self):
        """to_dict should list partitions and raw writes."""
        data = RK3588_GPT.to_dict()

        assert data["sector_size"] == SECTOR_SIZE
        assert len(data["partitions"]) == 5
        assert {"filename": IDBLOADER, "start_sector": 64} in data["raw_writes"]


class TestValidation:
    """Tests for invalid layouts."""

    def _layout(self, partitions, raw_writes=()):
        return PartitionLayout(
            name="test",
            description="test",
            partitions=tuple(partitions),
            raw_writes=tuple(raw_writes),
        )

    def _boot(self, number=1, start=2048, end=4095):
        return PartitionSpec(
            number, "boot", start, end, filesystem="vfat", boot_flag=True
        )

    def _root(self, number=2, start=4096, end=None):
        return PartitionSpec(number, "rootfs", start, end, filesystem="ext4")

    def test_valid_minimal(self):
        """A boot and root partition pair should validate."""
        self._layout([self._boot(), self._root()]).validate()

    def test_overlap_rejected(self):
        """Overlapping partitions should be rejected."""
        layout = self._layout([self._boot(), self._root(start=4000)])

        with pytest.raises(LayoutError, match="overlaps"):
            layout.validate()

    def test_open_ended_not_last_rejected(self):
        """Only the last partition may be open-ended."""
        layout = self._layout([self._boot(end=None), self._root()])

        with pytest.raises(LayoutError, match="end of device"):
            layout.validate()

    def test_numbering_gap_rejected(self):
        """Partition numbers must be consecutive from 1."""
        layout = self._layout([self._boot(), self._root(number=3)])

        with pytest.raises(LayoutError, match="expected 2"):
            layout.validate()

    def test_gpt_header_rejected(self):
        """No partition may start inside the primary GPT."""
        layout = self._layout([self._boot(start=10), self._root()])

        with pytest.raises(LayoutError, match="GPT header"):
            layout.validate()

    def test_raw_write_in_filesystem_rejected(self):
        """A raw write inside a filesystem partition should be rejected."""
        layout = self._layout(
            [self._boot(), self._root()], [RawPlacement(IDBLOADER, 3000)]
        )

        with pytest.raises(LayoutError, match="filesystem partition"):
            layout.validate()

    def test_non_vfat_boot_rejected(self):
        """The boot partition must be vfat."""
        boot = PartitionSpec(1, "boot", 2048, 4095, filesystem="ext4", boot_flag=True)

        with pytest.raises(LayoutError, match="vfat"):
            self._layout([boot, self._root()]).validate()

    def test_unknown_layout(self):
        """Unknown layout names should raise LayoutError."""
        with pytest.raises(LayoutError, match="Unknown partition layout"):
            get_layout("rk3399-something")


class TestCheckRawWrite:
    """Tests for check_raw_write."""

    def test_fits_before_boot(self):
        """A blob ending right before the boot partition is allowed."""
        size = (RK3588_GPT.first_filesystem_sector - 64) * SECTOR_SIZE

        check_raw_write(RK3588_GPT, 64, size)

    def test_overruns_boot(self):
        """A blob reaching into the boot partition is rejected."""
        size = (RK3588_GPT.first_filesystem_sector - 64) * SECTOR_SIZE + 1

        with pytest.raises(LayoutError, match="past the start"):
            check_raw_write(RK3588_GPT, 64, size)

    def test_partition_table_protected(self):
        """Writes into the GPT header are rejected."""
        with pytest.raises(LayoutError, match="partition table"):
            check_raw_write(RK3588_GPT, 1, 512)


class TestComposeSgdisk:
    """Tests for compose_sgdisk_commands."""

    def test_commands(self, tmp_path):
        """Should zap old tables and then create every partition."""
        image = tmp_path / "disk.img"

        zap, create = compose_sgdisk_commands(RK3588_GPT, image)

        assert zap == ["sgdisk", "--zap-all", str(image)]
        assert create[:2] == ["sgdisk", "--clear"]
        assert create[-1] == str(image)
        assert "--new=1:64:8063" in create
        assert "--new=4:32768:557055" in create
        assert "--new=5:557056:0" in create
        assert "--change-name=4:boot" in create
        assert "--typecode=4:0700" in create
        assert "--attributes=4:set:2" in create
        assert not any(a.startswith("--attributes=5") for a in create)
