"""Schema v1 - Initial index schema.

This version includes tables for:
- The token metadata mirror (one row per token id)
- Marketplace listing orders (one row per order hash)
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'metadata',
            'columns': [
                {'name': 'token_id', 'type': 'DECIMAL(78, 0)', 'primary_key': True},
                {'name': 'nft_contract', 'type': 'TEXT'},
                {'name': 'owner_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'name', 'type': 'TEXT', 'nullable': False},
                {'name': 'image_uri', 'type': 'TEXT'},
                {'name': 'last_synced_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_metadata_owner', 'columns': ['owner_address']}
            ]
        },
        {
            'name': 'orders',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'order_hash', 'type': 'TEXT', 'nullable': False},
                {'name': 'token_id', 'type': 'DECIMAL(78, 0)'},
                {'name': 'price', 'type': 'DECIMAL(78, 0)'},
                {'name': 'seller_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_address', 'type': 'TEXT'},
                {'name': 'signed_order', 'type': 'TEXT', 'nullable': False},
                {'name': 'on_chain', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'active'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_orders_hash', 'columns': ['order_hash'], 'unique': True},
                {'name': 'idx_orders_token', 'columns': ['token_id']},
                {'name': 'idx_orders_status_created', 'columns': ['status', 'created_at']}
            ]
        }
    ],
    'migrations': []
}
