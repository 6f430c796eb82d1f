import pytest

from hdiff_updater.errors import BrokenChain, NoApplicablePackage, UnsupportedFormat
from hdiff_updater.models import UpdatePackage
from hdiff_updater.resolver import PackageResolver, describe_sequence, order_chain
from hdiff_updater.version import BinaryVersion

from conftest import write_package

V = BinaryVersion.parse


def pkg(name, src, dst):
    return UpdatePackage(name, "hdiffmap-v1", V(src), V(dst), ())


def ids(chain):
    return [p.id for p in chain]


def test_orders_chain_regardless_of_discovery_order():
    a, b, c = pkg("A", "1.0.1", "1.0.2"), pkg("B", "1.0.2", "1.0.3"), pkg("C", "1.0.3", "1.0.4")
    assert ids(order_chain([c, a, b], V("1.0.1"))) == ["A", "B", "C"]


def test_later_package_alone_is_stalled():
    b = pkg("B", "1.0.2", "1.0.3")
    with pytest.raises(NoApplicablePackage) as exc:
        order_chain([b], V("1.0.1"))
    assert exc.value.up_to_date is False
    assert "1.0.2" in str(exc.value)


def test_all_packages_already_applied_is_up_to_date():
    a, b = pkg("A", "1.0.1", "1.0.2"), pkg("B", "1.0.2", "1.0.3")
    with pytest.raises(NoApplicablePackage) as exc:
        order_chain([a, b], V("1.0.3"))
    assert exc.value.up_to_date is True


def test_no_packages_at_all_is_not_up_to_date():
    with pytest.raises(NoApplicablePackage) as exc:
        order_chain([], V("1.0.0"))
    assert exc.value.up_to_date is False


def test_resume_skips_committed_packages():
    a, b = pkg("A", "1.0.1", "1.0.2"), pkg("B", "1.0.2", "1.0.3")
    assert ids(order_chain([a, b], V("1.0.2"))) == ["B"]


def test_two_packages_from_one_version():
    with pytest.raises(BrokenChain):
        order_chain([pkg("A", "1.0.1", "1.0.2"), pkg("A2", "1.0.1", "1.0.3")], V("1.0.1"))


def test_cycle():
    chain = [pkg("A", "1.0.1", "1.0.2"), pkg("B", "1.0.2", "1.0.3"), pkg("C", "1.0.3", "1.0.2")]
    with pytest.raises(BrokenChain, match="cycle"):
        order_chain(chain, V("1.0.1"))


def test_disjoint_package_breaks_chain():
    with pytest.raises(BrokenChain):
        order_chain([pkg("A", "1.0.1", "1.0.2"), pkg("Z", "1.0.7", "1.0.8")], V("1.0.1"))


def test_resolve_from_folders(tmp_path, settings):
    src = tmp_path / "updates"
    write_package(src / "2_second", "1.0.2", "1.0.3")
    write_package(src / "1_first", "1.0.1", "1.0.2")
    resolver = PackageResolver(settings.temp_root, settings.version_file)
    chain = resolver.resolve(src, V("1.0.1"))
    assert ids(chain) == ["1_first", "2_second"]
    assert describe_sequence(V("1.0.1"), chain) == "1.0.1 → 1.0.2 → 1.0.3"
    # metadata scratch is gone
    assert list(settings.temp_root.iterdir()) == []


def test_unsupported_package_fails_resolution(tmp_path, settings):
    src = tmp_path / "updates"
    write_package(src / "ok", "1.0.1", "1.0.2")
    write_package(src / "odd", "1.0.2", "1.0.3", extra={"format_version": "v99"})
    with pytest.raises(UnsupportedFormat):
        PackageResolver(settings.temp_root, settings.version_file).resolve(src, V("1.0.1"))
