"""Schema v2 - Settlement sweep cursor and contract columns on orders.

This version adds:
- sync_state: named block cursors (the settlement sweep resumes from here)
- orders.nft_contract / orders.marketplace_contract / orders.image
"""

schema = {
    'version': 2,
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
                {'name': 'nft_contract', 'type': 'TEXT'},
                {'name': 'marketplace_contract', 'type': 'TEXT'},
                {'name': 'seller_address', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_address', 'type': 'TEXT'},
                {'name': 'signed_order', 'type': 'TEXT', 'nullable': False},
                {'name': 'on_chain', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'active'"},
                {'name': 'image', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_orders_hash', 'columns': ['order_hash'], 'unique': True},
                {'name': 'idx_orders_token', 'columns': ['token_id']},
                {'name': 'idx_orders_status_created', 'columns': ['status', 'created_at']}
            ]
        },
        {
            'name': 'sync_state',
            'columns': [
                {'name': 'name', 'type': 'TEXT', 'primary_key': True},
                {'name': 'last_block', 'type': 'INT8', 'nullable': False},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        }
    ],
    'migrations': [
        '''
        CREATE TABLE IF NOT EXISTS sync_state (
            name TEXT PRIMARY KEY,
            last_block INT8 NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        ''',
        '''
        ALTER TABLE orders
        ADD COLUMN IF NOT EXISTS nft_contract TEXT,
        ADD COLUMN IF NOT EXISTS marketplace_contract TEXT,
        ADD COLUMN IF NOT EXISTS image TEXT;
        '''
    ]
}
