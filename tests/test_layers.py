# SPDX-License-Identifier: LGPL-2.1-or-later

import os
from pathlib import Path

import pytest

from docker_to_uefi.image import LayerArchive
from docker_to_uefi.layers import (
    EntryKind,
    LayerEntry,
    chase,
    classify,
    index_layer,
    merge_image,
    merge_layers,
    normalize_member_name,
)
from docker_to_uefi.log import LayerCorrupt

from . import tar_chardev, tar_dir, tar_file, tar_hardlink, tar_symlink, write_tar


def f(path: str) -> LayerEntry:
    return LayerEntry(path, EntryKind.file)


def d(path: str) -> LayerEntry:
    return LayerEntry(path, EntryKind.directory)


def wh(path: str) -> LayerEntry:
    return LayerEntry(path, EntryKind.whiteout)


def opq(path: str) -> LayerEntry:
    return LayerEntry(path, EntryKind.opaque)


def test_normalize_member_name() -> None:
    assert normalize_member_name("./etc/passwd") == "etc/passwd"
    assert normalize_member_name("etc//passwd") == "etc/passwd"
    assert normalize_member_name("usr/lib/") == "usr/lib"
    assert normalize_member_name("usr/../etc/hosts") == "etc/hosts"
    assert normalize_member_name(".") is None
    assert normalize_member_name("./") is None
    assert normalize_member_name("../etc/passwd") is None
    assert normalize_member_name("etc/../../passwd") is None
    assert normalize_member_name("/etc/passwd") is None


def test_classify_whiteouts() -> None:
    assert classify(tar_file("etc/.wh.motd")[0]) == [wh("etc/motd")]
    assert classify(tar_file(".wh.opt")[0]) == [wh("opt")]
    assert classify(tar_file("var/cache/.wh..wh..opq")[0]) == [opq("var/cache")]
    assert classify(tar_file(".wh..wh..opq")[0]) == [opq("")]
    assert classify(tar_chardev("etc/motd")[0]) == [wh("etc/motd")]
    assert classify(tar_dir("var/cache", opaque=True)[0]) == [opq("var/cache"), d("var/cache")]


def test_classify_regular_entries() -> None:
    assert classify(tar_file("./etc/hostname")[0]) == [f("etc/hostname")]
    assert classify(tar_dir("etc/")[0]) == [d("etc")]
    assert classify(tar_symlink("bin", "usr/bin")[0]) == [LayerEntry("bin", EntryKind.symlink)]
    assert classify(tar_hardlink("usr/bin/vi", "usr/bin/vim")[0]) == [
        LayerEntry("usr/bin/vi", EntryKind.hardlink)
    ]
    assert classify(tar_chardev("dev/null", 1, 3)[0]) == [LayerEntry("dev/null", EntryKind.device)]
    assert classify(tar_file("../escape")[0]) == []
    assert classify(tar_dir("./")[0]) == []


def test_later_layers_override_earlier_ones() -> None:
    merged = merge_layers([[d("etc"), f("etc/hostname")], [f("etc/hostname")]])
    assert merged == {"etc": 0, "etc/hostname": 1}


def test_whiteout_deletes_path_of_lower_layer() -> None:
    merged = merge_layers([[d("etc"), f("etc/motd"), f("etc/issue")], [wh("etc/motd")]])
    assert "etc/motd" not in merged
    assert merged == {"etc": 0, "etc/issue": 0}


def test_recreated_path_is_present_with_upper_content() -> None:
    merged = merge_layers([[f("a")], [wh("a")], [f("a")]])
    assert merged == {"a": 2}


def test_whiteout_and_recreation_in_same_layer() -> None:
    # Deletions only ever apply to the layers below.
    merged = merge_layers([[d("opt"), f("opt/old")], [wh("opt"), d("opt"), f("opt/new")]])
    assert merged == {"opt": 1, "opt/new": 1}


def test_whiteout_of_directory_removes_subtree() -> None:
    merged = merge_layers([[d("usr"), d("usr/share"), f("usr/share/doc"), f("usrx")], [wh("usr")]])
    assert merged == {"usrx": 0}


def test_opaque_directory_hides_lower_contents() -> None:
    merged = merge_layers(
        [
            [d("var"), d("var/cache"), f("var/cache/a"), f("var/cache/b"), f("var/log")],
            [opq("var/cache"), d("var/cache"), f("var/cache/c")],
        ]
    )
    assert merged == {"var": 0, "var/log": 0, "var/cache": 1, "var/cache/c": 1}


def test_opaque_root_hides_everything_below() -> None:
    merged = merge_layers([[d("etc"), f("etc/a")], [opq(""), f("b")]])
    assert merged == {"b": 1}


def test_file_replacing_directory_drops_subtree() -> None:
    merged = merge_layers([[d("lib"), f("lib/libc.so")], [LayerEntry("lib", EntryKind.symlink)]])
    assert merged == {"lib": 1}


def test_whiteout_of_missing_path_is_harmless() -> None:
    assert merge_layers([[f("a")], [wh("b")]]) == {"a": 0}


def test_chase_stays_inside_root(tmp_path: Path) -> None:
    (tmp_path / "usr/lib").mkdir(parents=True)
    (tmp_path / "lib").symlink_to("usr/lib")
    (tmp_path / "abs").symlink_to("/usr/lib")
    (tmp_path / "up").symlink_to("../../../../usr")

    assert chase(tmp_path, "lib") == "usr/lib"
    assert chase(tmp_path, "lib/x") == "usr/lib/x"
    assert chase(tmp_path, "abs/x") == "usr/lib/x"
    assert chase(tmp_path, "up/lib") == "usr/lib"
    assert chase(tmp_path, "lib", follow_final=False) == "lib"
    assert chase(tmp_path, "../../etc") == "etc"


def test_chase_symlink_loop(tmp_path: Path) -> None:
    (tmp_path / "a").symlink_to("b")
    (tmp_path / "b").symlink_to("a")

    with pytest.raises(LayerCorrupt):
        chase(tmp_path, "a/x")


def test_index_layer_corrupt(tmp_path: Path) -> None:
    layer = tmp_path / "layer.tar"
    layer.write_bytes(b"this is not a tar archive" * 100)

    with pytest.raises(LayerCorrupt):
        index_layer(LayerArchive("sha256:abc", layer))


def test_merge_image(tmp_path: Path) -> None:
    layers = [
        write_tar(
            tmp_path / "layers/0.tar",
            [
                tar_dir("etc"),
                tar_file("etc/a", b"one"),
                tar_file("etc/b", b"one"),
                tar_file("etc/shadow", b"root:*:0:0:99999:7:::\n", 0o640),
                tar_dir("usr"),
                tar_dir("usr/lib"),
                tar_symlink("lib", "usr/lib"),
                tar_dir("var"),
                tar_dir("var/cache"),
                tar_file("var/cache/stale", b"stale"),
            ],
        ),
        write_tar(
            tmp_path / "layers/1.tar",
            [
                tar_file("etc/.wh.a"),
                tar_file("etc/b", b"two"),
                tar_file("lib/x", b"x"),
                tar_hardlink("etc/c", "etc/b"),
                tar_dir("var/cache", opaque=True),
                tar_file("var/cache/fresh", b"fresh"),
            ],
        ),
        write_tar(tmp_path / "layers/2.tar", [tar_file("etc/a", b"three")]),
    ]

    root = tmp_path / "root"
    root.mkdir()

    merged = merge_image([LayerArchive(f"sha256:{i}", p) for i, p in enumerate(layers)], root)

    assert merged.entries["etc/a"] == 2
    assert (root / "etc/a").read_text() == "three"
    assert (root / "etc/b").read_text() == "two"
    assert (root / "etc/c").read_text() == "two"
    assert os.stat(root / "etc/c").st_ino == os.stat(root / "etc/b").st_ino
    assert (root / "etc/shadow").stat().st_mode & 0o777 == 0o640
    assert (root / "lib").is_symlink()
    assert os.readlink(root / "lib") == "usr/lib"
    assert (root / "usr/lib/x").read_text() == "x"
    assert not (root / "var/cache/stale").exists()
    assert (root / "var/cache/fresh").read_text() == "fresh"
    assert not (root / "etc/.wh.a").exists()


def test_merge_image_drops_whited_out_file(tmp_path: Path) -> None:
    layers = [
        write_tar(tmp_path / "0.tar", [tar_file("a", b"one")]),
        write_tar(tmp_path / "1.tar", [tar_file(".wh.a")]),
    ]

    root = tmp_path / "root"
    root.mkdir()

    merged = merge_image([LayerArchive(f"sha256:{i}", p) for i, p in enumerate(layers)], root)

    assert merged.entries == {}
    assert not (root / "a").exists()


def test_merge_image_replaces_symlink_instead_of_writing_through(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    outside.write_text("host")

    layers = [
        write_tar(tmp_path / "0.tar", [tar_symlink("motd", str(outside))]),
        write_tar(tmp_path / "1.tar", [tar_file("motd", b"image")]),
    ]

    root = tmp_path / "root"
    root.mkdir()

    merge_image([LayerArchive(f"sha256:{i}", p) for i, p in enumerate(layers)], root)

    assert outside.read_text() == "host"
    assert not (root / "motd").is_symlink()
    assert (root / "motd").read_text() == "image"


def test_merge_image_device_nodes(tmp_path: Path) -> None:
    if os.getuid() != 0:
        pytest.skip("Creating device nodes requires root privileges")

    layers = [write_tar(tmp_path / "0.tar", [tar_dir("dev"), tar_chardev("dev/null", 1, 3)])]

    root = tmp_path / "root"
    root.mkdir()

    merge_image([LayerArchive("sha256:0", layers[0])], root)

    st = (root / "dev/null").stat()
    assert os.major(st.st_rdev) == 1
    assert os.minor(st.st_rdev) == 3
