from services.oauth_state import OAuthStateStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_state_is_single_use():
    store = OAuthStateStore(ttl_seconds=60, clock=FakeClock())
    state = store.issue("https://Test-Shop.myshopify.com/")

    assert store.consume(state) == "test-shop.myshopify.com"
    assert store.consume(state) is None


def test_state_expires_after_ttl():
    clock = FakeClock()
    store = OAuthStateStore(ttl_seconds=60, clock=clock)
    state = store.issue("test-shop.myshopify.com")

    clock.now += 61

    assert store.consume(state) is None
    assert len(store) == 0


def test_unknown_and_empty_states_are_rejected():
    store = OAuthStateStore(ttl_seconds=60, clock=FakeClock())
    store.issue("test-shop.myshopify.com")

    assert store.consume("forged") is None
    assert store.consume(None) is None
    assert len(store) == 1


def test_issuing_evicts_expired_entries():
    clock = FakeClock()
    store = OAuthStateStore(ttl_seconds=10, clock=clock)
    store.issue("a.myshopify.com")
    clock.now += 11
    fresh = store.issue("b.myshopify.com")

    assert len(store) == 1
    assert store.consume(fresh) == "b.myshopify.com"
