from datetime import datetime, timedelta


def today():
    return datetime.utcnow().date()


def test_health_check(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_profile_created_on_first_request(client):
    r = client.get("/profile")
    assert r.status_code == 200
    data = r.json()
    assert data["id"] == "farmer-1"
    assert data["email"] == "farmer-1@example.com"
    assert data["currency"] == "USD"

    r = client.put("/profile", json={"farm_name": "Sunrise Farm", "currency": "KES"})
    assert r.status_code == 200
    assert r.json()["farm_name"] == "Sunrise Farm"
    assert r.json()["currency"] == "KES"


def test_create_flock_starts_with_zero_totals(client, make_flock):
    flock = make_flock()
    assert flock["count"] == 100
    assert flock["total_cost"] == 0
    assert flock["total_feed_consumed"] == 0
    assert flock["total_eggs_collected"] == 0
    assert flock["eggs_in_stock"] == 0


def test_create_flock_rejects_count_above_initial(client):
    r = client.post("/flocks/", json={
        "breed": "Cobb 500",
        "type": "Broiler",
        "count": 120,
        "initial_count": 100,
        "hatch_date": today().isoformat(),
    })
    assert r.status_code == 422


def test_list_flocks_filters_by_type(client, make_flock):
    make_flock()
    make_flock(breed="ISA Brown", type="Layer")
    r = client.get("/flocks/", params={"type": "Layer"})
    assert r.status_code == 200
    assert [f["breed"] for f in r.json()] == ["ISA Brown"]
    assert len(client.get("/flocks/").json()) == 2


def test_update_flock(client, make_flock):
    flock = make_flock()
    r = client.put(f"/flocks/{flock['id']}", json={"breed": "Ross 308", "average_weight": 1.5})
    assert r.status_code == 200
    assert r.json()["breed"] == "Ross 308"
    assert r.json()["average_weight"] == 1.5

    r = client.put(f"/flocks/{flock['id']}", json={"count": 150})
    assert r.status_code == 400
    assert r.json()["field"] == "count"


def test_record_loss(client, make_flock):
    flock = make_flock()
    r = client.post(f"/flocks/{flock['id']}/losses", json={"count": 5})
    assert r.status_code == 200
    assert r.json()["count"] == 95

    r = client.post(f"/flocks/{flock['id']}/losses", json={"count": 96})
    assert r.status_code == 400
    assert r.json()["field"] == "count"


def test_record_eggs_updates_production_rate(client, make_flock, get_flock):
    hatch = today() - timedelta(weeks=10)
    flock = make_flock(breed="ISA Brown", type="Layer", hatch_date=hatch.isoformat())
    r = client.post(f"/flocks/{flock['id']}/eggs", json={"count": 3500})
    assert r.status_code == 200
    assert r.json()["total_eggs_collected"] == 3500
    # 3500 eggs / (10 weeks * 7 days * 100 birds)
    assert r.json()["egg_production_rate"] == 50.0
    assert get_flock(flock["id"])["egg_production_rate"] == 50.0


def test_record_eggs_rejected_for_broilers(client, make_flock):
    flock = make_flock()
    r = client.post(f"/flocks/{flock['id']}/eggs", json={"count": 10})
    assert r.status_code == 400


def test_flock_metrics(client, make_flock):
    flock = make_flock()
    client.post(f"/flocks/{flock['id']}/losses", json={"count": 10})
    r = client.get(f"/flocks/{flock['id']}/metrics")
    assert r.status_code == 200
    data = r.json()
    assert data["age_in_weeks"] == 4
    assert data["mortality_rate"] == 10.0
    assert data["feed_conversion_ratio"] is None
    assert data["cost_per_bird"] == 0
    assert data["egg_production_rate"] is None


def test_missing_flock_is_404(client):
    r = client.get("/flocks/does-not-exist")
    assert r.status_code == 404


def test_other_users_flock_is_forbidden(client, make_flock, switch_user):
    flock = make_flock()
    switch_user("farmer-2")

    r = client.get(f"/flocks/{flock['id']}")
    assert r.status_code == 403
    assert r.json() == {"detail": "You do not have permission to perform this action."}

    r = client.post(f"/flocks/{flock['id']}/losses", json={"count": 1})
    assert r.status_code == 403
    assert client.get("/flocks/").json() == []


def test_access_error_context_shown_in_debug(client, make_flock, switch_user, monkeypatch):
    from cluckhub import main

    monkeypatch.setattr(main.settings, "debug", True)
    flock = make_flock()
    switch_user("farmer-2")
    r = client.delete(f"/flocks/{flock['id']}")
    assert r.status_code == 403
    context = r.json()["context"]
    assert context["operation"] == "delete"
    assert context["path"] == f"users/farmer-2/flocks/{flock['id']}"


def test_delete_flock_keeps_orphaned_records(client, make_flock):
    flock = make_flock()
    client.post("/sales/", json={
        "flock_id": flock["id"], "quantity": 10, "price_per_unit": 5.0,
        "customer": "Local Market", "sale_date": today().isoformat(),
    })
    client.post("/expenditures/", json={
        "category": "Feed", "quantity": 20, "unit_price": 1.0,
        "expenditure_date": today().isoformat(), "flock_id": flock["id"],
    })

    r = client.delete(f"/flocks/{flock['id']}")
    assert r.status_code == 200
    assert r.json() == {"message": "Flock deleted", "orphaned_sales": 1, "orphaned_expenditures": 1}
    assert client.get(f"/flocks/{flock['id']}").status_code == 404

    sales = client.get("/sales/").json()
    assert len(sales) == 1
    assert sales[0]["flock_id"] == flock["id"]

    # Orphans can still be deleted
    assert client.delete(f"/sales/{sales[0]['id']}").status_code == 200
    expenditure = client.get("/expenditures/").json()[0]
    assert client.delete(f"/expenditures/{expenditure['id']}").status_code == 200


def test_edit_cannot_strand_sold_birds(client, make_flock, get_flock):
    flock = make_flock()
    sale = client.post("/sales/", json={
        "flock_id": flock["id"], "quantity": 20, "price_per_unit": 10.0,
        "customer": "Local Market", "sale_date": today().isoformat(),
    }).json()

    r = client.put(f"/flocks/{flock['id']}", json={"count": 100})
    assert r.status_code == 400
    assert r.json()["field"] == "count"

    r = client.put(f"/flocks/{flock['id']}", json={"initial_count": 80})
    assert r.status_code == 400
    assert r.json()["field"] == "initial_count"

    stored = get_flock(flock["id"])
    assert (stored["count"], stored["initial_count"]) == (80, 100)

    # Correcting the count downwards still fits the sold birds
    r = client.put(f"/flocks/{flock['id']}", json={"count": 75})
    assert r.status_code == 200

    assert client.delete(f"/sales/{sale['id']}").status_code == 200
    assert get_flock(flock["id"])["count"] == 95


def test_egg_sales_leave_production_rate_cumulative(client, make_flock, get_flock):
    flock = make_flock(breed="ISA Brown", type="Layer")
    r = client.post(f"/flocks/{flock['id']}/eggs", json={"count": 1000})
    # 1000 eggs / (4 weeks * 7 days * 100 birds)
    assert r.json()["egg_production_rate"] == 35.71

    r = client.post("/sales/", json={
        "flock_id": flock["id"], "sale_type": "Eggs", "quantity": 500, "price_per_unit": 0.2,
        "customer": "Local Market", "sale_date": today().isoformat(),
    })
    assert r.status_code == 200
    sale_id = r.json()["id"]

    r = client.post(f"/flocks/{flock['id']}/eggs", json={"count": 1})
    assert r.status_code == 200
    data = r.json()
    assert data["total_eggs_collected"] == 1001
    assert data["eggs_in_stock"] == 501
    assert data["egg_production_rate"] == 35.75

    assert client.delete(f"/sales/{sale_id}").status_code == 200
    stored = get_flock(flock["id"])
    assert stored["eggs_in_stock"] == 1001
    assert stored["total_eggs_collected"] == 1001
