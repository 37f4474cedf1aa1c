import json
import os
import tempfile

import pytest

# Point the app at a throwaway database before it is imported.
os.environ['DATABASE'] = os.path.join(tempfile.mkdtemp(prefix='auction-admin-'), 'test.db')
os.environ['SEED_DEMO_DATA'] = '0'

import app as admin_app  # noqa: E402


class Store:
    """Row writer for tests; columns mirror the storage schema."""

    def __init__(self, conn):
        self.conn = conn

    def _insert(self, table, fields):
        columns = ', '.join(fields)
        marks = ', '.join('?' for _ in fields)
        cur = self.conn.execute(f'INSERT INTO {table} ({columns}) VALUES ({marks})', list(fields.values()))
        self.conn.commit()
        return cur.lastrowid

    def auction(self, **fields):
        if isinstance(fields.get('auctionduration'), dict):
            fields['auctionduration'] = json.dumps(fields['auctionduration'])
        return self._insert('auctions', fields)

    def bid(self, auction_id, user_id, amount, created_at='2024-01-01T00:30:00Z'):
        return self._insert('bids', {
            'auction_id': auction_id, 'user_id': user_id,
            'amount': amount, 'created_at': created_at,
        })

    def profile(self, id, **fields):
        fields['id'] = id
        return self._insert('profiles', fields)

    def category(self, id, title):
        return self._insert('categories', {'id': id, 'title': title})


@pytest.fixture
def app():
    flask_app = admin_app.app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def conn(app):
    db = admin_app.get_db()
    for table in ('bids', 'auctions', 'profiles', 'categories'):
        db.execute(f'DELETE FROM {table}')
    db.commit()
    yield db
    db.close()


@pytest.fixture
def store(conn):
    return Store(conn)


@pytest.fixture
def client(app, conn):
    with app.test_client() as client:
        yield client
