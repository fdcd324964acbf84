from __future__ import annotations

import pytest

from panel.database import Database
from panel.ports import APP_PORT_POOLS, RESERVED_PORTS, PortAllocationError, PortAllocator


@pytest.fixture()
def owner(database: Database):
    return database.create_user("owner", "owner@example.com", "Sup3rSecurePwd!")


def test_allocates_first_free_port_of_the_type_pool(database: Database, owner) -> None:
    allocator = PortAllocator(database)

    assert allocator.allocate("php", user_id=owner.id, name="shop") == 8000
    database.create_application(owner.id, "shop", "php", domain=None, port=8000)
    assert allocator.allocate("php", user_id=owner.id, name="forum") == 8001
    assert allocator.allocate("wordpress", user_id=owner.id, name="blog") == 7000


def test_reserved_ports_are_never_handed_out(database: Database, owner) -> None:
    allocator = PortAllocator(database)

    port = allocator.allocate("nodejs", user_id=owner.id, name="api")

    assert port not in RESERVED_PORTS
    assert port == 3003
    assert port in APP_PORT_POOLS["nodejs"]


def test_redeploy_keeps_the_existing_port(database: Database, owner) -> None:
    allocator = PortAllocator(database)
    database.create_application(owner.id, "api", "python", domain=None, port=5007)

    assert allocator.allocate("python", user_id=owner.id, name="api") == 5007
    with pytest.raises(PortAllocationError):
        allocator.allocate("nodejs", user_id=owner.id, name="api")


def test_exhausted_pool_raises(database: Database, owner) -> None:
    allocator = PortAllocator(database, pools={"static": range(4000, 4002)})
    database.create_application(owner.id, "one", "static", domain=None, port=4000)
    database.create_application(owner.id, "two", "static", domain=None, port=4001)

    with pytest.raises(PortAllocationError, match="exhausted"):
        allocator.allocate("static", user_id=owner.id, name="three")


def test_reserve_validates_requested_ports(database: Database, owner) -> None:
    allocator = PortAllocator(database)
    app = database.create_application(owner.id, "one", "nodejs", domain=None, port=3500)

    assert allocator.reserve("nodejs", 3501) == 3501
    assert allocator.reserve("nodejs", 3500, app_id=app.id) == 3500
    with pytest.raises(PortAllocationError):
        allocator.reserve("nodejs", 3500)
    with pytest.raises(PortAllocationError):
        allocator.reserve("nodejs", 3001)
    with pytest.raises(PortAllocationError):
        allocator.reserve("nodejs", 8000)
    with pytest.raises(ValueError):
        allocator.pool("ruby")
