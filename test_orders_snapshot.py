# test_orders_snapshot.py
from tablepay.db import session_scope
from tablepay.models.core import Dish, DishStatus


def test_snapshot_keeps_price_after_menu_edit(client, seed, auth, notifier):
    guest = seed.guest(table_number=3)
    pho = seed.dish(name="Pho", price=100)

    r = client.post("/orders", headers=auth(guest), json={"orders": [{"dishId": pho, "quantity": 2}]})
    assert r.status_code == 200, r.text
    placed = r.json()
    assert len(placed) == 1
    assert placed[0]["tableNumber"] == 3
    assert placed[0]["status"] == "Pending"
    assert placed[0]["dishSnapshot"]["price"] == 100
    assert [(e, room) for e, room, _ in notifier.events] == [("new-order", "ManagerRoom")]

    with session_scope() as s:
        dish = s.get(Dish, pho)
        dish.price = 180
        dish.name = "Pho (large)"

    mine = client.get("/orders", headers=auth(guest)).json()
    assert mine[0]["dishSnapshot"]["price"] == 100
    assert mine[0]["dishSnapshot"]["name"] == "Pho"

    r = client.post("/payments", headers=auth(guest), json={"paymentMethod": "Cash"})
    assert r.json()["data"]["payment"]["amount"] == 200


def test_unavailable_dish_is_refused(client, seed, auth):
    guest = seed.guest()
    gone = seed.dish(name="Bun", status=DishStatus.UNAVAILABLE)
    r = client.post("/orders", headers=auth(guest), json={"orders": [{"dishId": gone, "quantity": 1}]})
    assert r.status_code == 422
    assert r.json()["code"] == "VALIDATION_ERROR"
    assert client.get("/orders", headers=auth(guest)).json() == []


def test_staff_places_orders_for_a_guest(client, seed, auth):
    guest = seed.guest()
    pho = seed.dish()
    staff = auth("staff-1", "Employee")

    r = client.post("/orders", headers=staff, json={"orders": [{"dishId": pho, "quantity": 1}]})
    assert r.status_code == 400
    r = client.post("/orders", headers=staff, json={"guestId": "nobody", "orders": [{"dishId": pho, "quantity": 1}]})
    assert r.status_code == 404

    r = client.post("/orders", headers=staff, json={"guestId": guest, "orders": [{"dishId": pho, "quantity": 1}]})
    assert r.status_code == 200, r.text
    assert r.json()[0]["orderHandlerId"] == "staff-1"


def test_guests_only_list_their_own_orders(client, seed, auth):
    a, b = seed.guest(name="A"), seed.guest(name="B")
    seed.unpaid(a, [100])
    seed.unpaid(b, [200, 300])
    assert len(client.get("/orders", headers=auth(a)).json()) == 1
    assert len(client.get("/orders", headers=auth(b)).json()) == 2
    staff = auth("staff-1", "Owner")
    assert len(client.get("/orders", headers=staff).json()) == 3
    assert len(client.get("/orders", headers=staff, params={"guest_id": a}).json()) == 1


def test_order_status_rules(client, seed, auth, notifier):
    guest = seed.guest()
    first, second = seed.unpaid(guest, [100, 200])
    staff = auth("staff-1", "Employee")

    assert client.put(f"/orders/{first}/status", headers=auth(guest), json={"status": "Delivered"}).status_code == 403
    assert client.put(f"/orders/{first}/status", headers=staff, json={"status": "Paid"}).status_code == 400
    assert client.put("/orders/missing/status", headers=staff, json={"status": "Delivered"}).status_code == 404

    r = client.put(f"/orders/{first}/status", headers=staff, json={"status": "Delivered"})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "Delivered"
    assert notifier.events[-1][0] == "update-order"

    # rejected orders drop out of the bill
    client.put(f"/orders/{second}/status", headers=staff, json={"status": "Rejected"})
    r = client.post("/payments", headers=auth(guest), json={"paymentMethod": "Cash"})
    assert r.json()["data"]["payment"]["amount"] == 100

    r = client.put(f"/orders/{first}/status", headers=staff, json={"status": "Processing"})
    assert r.status_code == 409
