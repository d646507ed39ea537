"""Schema v1 - Versioned aggregate storage.

Every engine aggregate (users, items, trades, dispute tickets, ratings,
escrow holds and escrow ledger entries) is stored as a JSONB document keyed
by kind and id. The version column backs compare-and-swap updates.
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'aggregates',
            'columns': [
                {'name': 'kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'id', 'type': 'TEXT', 'nullable': False},
                {'name': 'version', 'type': 'INT8', 'nullable': False, 'default': '1'},
                {'name': 'body', 'type': 'JSONB', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['kind', 'id'],
            'indexes': [
                {'name': 'idx_aggregates_kind_created', 'columns': ['kind', 'created_at']}
            ]
        }
    ]
}
