from blacklist import BlacklistStore
from state_store import BLACKLIST_KEY
from tests.conftest import ALICE, BOB, USDC

NOW = 1_800_000_000_000


def test_add_sets_expiry_one_cooldown_ahead(store):
    blacklist = BlacklistStore(store, cooldown_sec=3600)
    expiry = blacklist.add(ALICE, now=NOW)
    assert expiry == NOW + 3_600_000
    assert blacklist.is_blacklisted(ALICE, now=NOW + 1)
    assert not blacklist.is_blacklisted(ALICE, now=expiry)


def test_keys_are_case_insensitive(store):
    blacklist = BlacklistStore(store, cooldown_sec=60)
    blacklist.add(USDC, now=NOW)
    assert blacklist.is_blacklisted(USDC.lower(), now=NOW)
    assert blacklist.is_blacklisted(USDC.upper().replace("0X", "0x"), now=NOW)
    assert list(store.get(BLACKLIST_KEY)) == [USDC.lower()]


def test_overlapping_adds_keep_one_entry_with_later_expiry(store):
    blacklist = BlacklistStore(store, cooldown_sec=600)
    first = blacklist.add(ALICE, now=NOW)
    second = blacklist.add(ALICE, now=NOW + 60_000)
    active = blacklist.active(now=NOW + 61_000)
    assert list(active) == [ALICE.lower()]
    assert active[ALICE.lower()] == max(first, second) == second


def test_re_add_never_shortens_expiry(store):
    long_lived = BlacklistStore(store, cooldown_sec=3600)
    short_lived = BlacklistStore(store, cooldown_sec=10)
    expiry = long_lived.add(ALICE, now=NOW)
    assert short_lived.add(ALICE, now=NOW + 1) == expiry


def test_expired_entries_are_inert_and_pruned_on_write(store):
    blacklist = BlacklistStore(store, cooldown_sec=1)
    blacklist.add(ALICE, now=NOW)
    later = NOW + 5_000
    assert not blacklist.is_blacklisted(ALICE, now=later)
    assert ALICE.lower() in store.get(BLACKLIST_KEY)

    blacklist.add(BOB, now=later)
    assert list(store.get(BLACKLIST_KEY)) == [BOB.lower()]


def test_separate_instances_share_state(store):
    BlacklistStore(store, cooldown_sec=60).add(ALICE, now=NOW)
    assert BlacklistStore(store, cooldown_sec=60).is_blacklisted(ALICE, now=NOW)


def test_corrupt_file_reads_as_empty(store):
    with open(store.path(BLACKLIST_KEY), "w") as f:
        f.write("{not json")
    assert BlacklistStore(store).active(now=NOW) == {}


def test_failed_read_does_not_erase_live_entries(store, flaky_reads):
    blacklist = BlacklistStore(store, cooldown_sec=3600)
    blacklist.add(ALICE, now=NOW)
    blacklist.add(BOB, now=NOW)

    flaky_reads.add(BLACKLIST_KEY)
    expiry = blacklist.add(USDC, now=NOW + 1)

    assert expiry == NOW + 1 + 3_600_000
    assert set(store.get(BLACKLIST_KEY)) == {ALICE.lower(), BOB.lower()}
    assert blacklist.is_blacklisted(ALICE, now=NOW + 2)


def test_corrupt_file_is_not_overwritten(store):
    with open(store.path(BLACKLIST_KEY), "w") as f:
        f.write("{not json")
    BlacklistStore(store).add(ALICE, now=NOW)
    with open(store.path(BLACKLIST_KEY)) as f:
        assert f.read() == "{not json"
