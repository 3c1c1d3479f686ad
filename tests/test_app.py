"""Tests for the Flask ledger API."""

from unittest.mock import MagicMock

import pytest

from app import Connectivity, create_app
from scrapledger.config import Settings
from scrapledger.sync import SyncEngine


@pytest.fixture
def session():
    """HTTP session that accepts every upload."""
    fake = MagicMock()
    fake.get.return_value = MagicMock(ok=True, status_code=200)
    fake.post.return_value = MagicMock(ok=True, status_code=200)
    fake.post.return_value.json.return_value = {"success": True, "message": "ok"}
    return fake


@pytest.fixture
def connectivity():
    return Connectivity(online=True)


@pytest.fixture
def client(store, session, connectivity):
    """Test client over the temporary store."""
    engine = SyncEngine(store, "http://backend.test", connectivity.is_online, session=session)
    app = create_app(Settings(db_path=store.path), store=store, engine=engine,
                     connectivity=connectivity)
    app.config['TESTING'] = True
    yield app.test_client()
    engine.shutdown()


def create_bill(client, copper_id, weight="10", price="50", mode="normal"):
    return client.post('/bills', json={
        'customerName': "Ravi",
        'items': [{'itemId': copper_id, 'pricePerKg': price,
                   'weights': [{'weight': weight, 'mode': mode}]}],
    })


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        """Test that an open store reports healthy."""
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {"status": "healthy"}


class TestBillRoutes:
    """Tests for bill endpoints."""

    def test_create_and_fetch(self, client, copper):
        """Test saving a bill and reading it back."""
        response = create_bill(client, copper.id, weight="9", mode="L")

        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['bill_number'] == "FAM02030001"
        assert data['total_amount'] == 450.0
        assert data['items'][0]['original_weight'] == 10.0

        fetched = client.get(f"/bills/{data['id']}").get_json()
        assert fetched['is_success'] is True
        assert fetched['data']['customer_name'] == "Ravi"

    def test_list_bills(self, client, copper):
        """Test the listing endpoint."""
        create_bill(client, copper.id)

        data = client.get('/bills').get_json()['data']

        assert len(data) == 1
        assert data[0]['items_list'] == "Copper Wire (10.0 kg)"

    def test_invalid_bill(self, client, copper):
        """Test that validation problems are 400s with every error listed."""
        response = client.post('/bills', json={'items': [
            {'itemId': 999, 'weight': 1},
            {'itemId': copper.id, 'pricePerKg': 5},
        ]})

        body = response.get_json()
        assert response.status_code == 400
        assert body['is_success'] is False
        assert body['errors'] == ["Item 1: Unknown item id 999", "Item 2: Please enter weight"]

    def test_non_json_body(self, client):
        """Test a request without a JSON object."""
        response = client.post('/bills', data="hello")

        assert response.status_code == 400

    def test_missing_bill(self, client):
        """Test unknown bill ids."""
        assert client.get('/bills/99').status_code == 404
        assert client.delete('/bills/99').status_code == 404
        assert client.get('/bills/99/history').status_code == 404

    def test_edit_and_history(self, client, copper):
        """Test editing a bill and reading its history."""
        bill_id = create_bill(client, copper.id).get_json()['data']['id']

        response = client.put(f'/bills/{bill_id}', json={
            'customerName': "Ravi",
            'items': [{'itemId': copper.id, 'pricePerKg': 50, 'weight': 12}],
        })

        assert response.status_code == 200
        assert response.get_json()['data']['total_amount'] == 600.0
        history = client.get(f'/bills/{bill_id}/history').get_json()['data']
        assert history[0]['changes'][0] == "Total Amount: 500.00 -> 600.00"

    def test_delete_bill(self, client, copper):
        """Test deleting a bill."""
        bill_id = create_bill(client, copper.id).get_json()['data']['id']

        assert client.delete(f'/bills/{bill_id}').status_code == 200
        assert client.get(f'/bills/{bill_id}').status_code == 404


class TestItemRoutes:
    """Tests for item and bottle type endpoints."""

    def test_create_and_list_items(self, client):
        """Test adding an item."""
        response = client.post('/items', json={'name': "Brass", 'price': 300})

        assert response.status_code == 201
        names = [item['name'] for item in client.get('/items').get_json()['data']]
        assert names == ["Brass"]

    def test_duplicate_item(self, client, copper):
        """Test a duplicate name."""
        response = client.post('/items', json={'name': "Copper Wire"})

        assert response.status_code == 400
        assert response.get_json()['error'] == "Item with this name already exists"

    def test_non_numeric_prices(self, client, copper):
        """Test that unparseable prices are 400s in the JSON envelope."""
        responses = [
            client.post('/items', json={'name': "Brass", 'price': "abc"}),
            client.patch(f'/items/{copper.id}', json={'last_price_per_kg': "abc"}),
            client.post('/bottle-types', json={'name': "Soda", 'display_name': "Soda",
                                               'price': "abc"}),
            client.post('/bottle-types', json={'name': "Soda", 'display_name': "Soda",
                                               'price': 4, 'weight': "NaN"}),
        ]

        for response in responses:
            assert response.status_code == 400
            assert response.get_json()['is_success'] is False
        assert [item['name'] for item in client.get('/items').get_json()['data']] == ["Copper Wire"]

    def test_patch_item(self, client, copper):
        """Test editing an item."""
        response = client.patch(f'/items/{copper.id}', json={'last_price_per_kg': 61})

        assert response.get_json()['data']['last_price_per_kg'] == 61.0

    def test_delete_item_in_use(self, client, copper):
        """Test that deleting a billed item is a conflict."""
        create_bill(client, copper.id)

        response = client.delete(f'/items/{copper.id}')

        assert response.status_code == 409
        assert "used in existing bills" in response.get_json()['error']

    def test_delete_item(self, client, copper):
        """Test deleting an unused item."""
        assert client.delete(f'/items/{copper.id}').status_code == 200
        assert client.delete(f'/items/{copper.id}').status_code == 404

    def test_bottle_types(self, client):
        """Test adding, listing and deleting bottle types."""
        created = client.post('/bottle-types', json={'name': "Soda", 'display_name': "Soda Bottle",
                                                     'price': 4})
        bottle_id = created.get_json()['data']['id']

        assert created.status_code == 201
        assert client.get('/bottle-types').get_json()['data'][0]['name'] == "soda"
        assert client.delete(f'/bottle-types/{bottle_id}').status_code == 200
        assert client.delete(f'/bottle-types/{bottle_id}').status_code == 404


class TestSettingsAndReports:
    """Tests for settings and report endpoints."""

    def test_weight_reduction(self, client):
        """Test reading and updating the reduction factor."""
        assert client.get('/settings/weight-reduction').get_json()['data'] == {"reduction": 0.1}

        response = client.put('/settings/weight-reduction', json={'reduction': 0.15})

        assert response.get_json()['data'] == {"reduction": 0.15}

    def test_invalid_weight_reduction(self, client):
        """Test that out-of-range factors are rejected."""
        assert client.put('/settings/weight-reduction', json={'reduction': 1}).status_code == 400
        assert client.put('/settings/weight-reduction', json={}).status_code == 400

    def test_report_summary(self, client, copper):
        """Test the filtered report."""
        create_bill(client, copper.id)

        data = client.get('/reports/summary?search=ravi&from=2024-03-01&to=2024-03-31').get_json()['data']

        assert data['bill_count'] == 1
        assert data['total_amount'] == '500.00'

    def test_report_bad_date(self, client):
        """Test an invalid date filter."""
        assert client.get('/reports/summary?from=March').status_code == 400

    def test_dashboard(self, client, copper):
        """Test the dashboard figures for the store's current day."""
        create_bill(client, copper.id)

        data = client.get('/reports/dashboard').get_json()['data']

        assert data['today_bills'] == 1
        assert data['pending_sync'] == 1
        assert data['weight_items'] == 1


class TestSyncRoutes:
    """Tests for sync endpoints."""

    def test_sync_now(self, client, copper, session):
        """Test a synchronous sync pass."""
        create_bill(client, copper.id)

        body = client.post('/sync').get_json()

        assert body['is_success'] is True
        assert body['data']['syncedBills'] == 1
        assert client.get('/sync/status').get_json()['data']['pending_bills'] == 0

    def test_sync_offline(self, client, copper, connectivity, session):
        """Test that an offline sync makes no HTTP calls."""
        create_bill(client, copper.id)
        connectivity.set(False)

        body = client.post('/sync').get_json()

        assert body['is_success'] is False
        assert "internet" in body['data']['message']
        session.post.assert_not_called()

    def test_retry_and_clear(self, client, copper):
        """Test the retry sweep and clearing sync state."""
        create_bill(client, copper.id)

        assert client.post('/sync/retry').get_json()['data']['syncedBills'] == 1
        assert client.post('/sync/clear').get_json()['data'] == {"cleared_bills": 1}
        assert client.get('/sync/status').get_json()['data']['pending_bills'] == 1

    def test_connectivity_change(self, client, connectivity):
        """Test reporting network state changes."""
        offline = client.post('/sync/connectivity', json={'online': False}).get_json()['data']
        online = client.post('/sync/connectivity', json={'online': True}).get_json()['data']

        assert offline == {"online": False, "sync_scheduled": False}
        assert online == {"online": True, "sync_scheduled": True}
        assert connectivity.is_online() is True

    def test_connectivity_needs_boolean(self, client):
        """Test validation of the connectivity payload."""
        assert client.post('/sync/connectivity', json={'online': "yes"}).status_code == 400
