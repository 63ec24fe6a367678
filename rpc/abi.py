"""Contract ABIs and event topics used by the reader and the approval gateway."""
from web3 import Web3

ERC721_ABI = [
    {
        'name': 'ownerOf',
        'type': 'function',
        'stateMutability': 'view',
        'inputs': [{'name': 'tokenId', 'type': 'uint256'}],
        'outputs': [{'name': '', 'type': 'address'}]
    },
    {
        'name': 'tokenURI',
        'type': 'function',
        'stateMutability': 'view',
        'inputs': [{'name': 'tokenId', 'type': 'uint256'}],
        'outputs': [{'name': '', 'type': 'string'}]
    },
    {
        'name': 'totalSupply',
        'type': 'function',
        'stateMutability': 'view',
        'inputs': [],
        'outputs': [{'name': '', 'type': 'uint256'}]
    },
    {
        'name': 'isApprovedForAll',
        'type': 'function',
        'stateMutability': 'view',
        'inputs': [
            {'name': 'owner', 'type': 'address'},
            {'name': 'operator', 'type': 'address'}
        ],
        'outputs': [{'name': '', 'type': 'bool'}]
    },
    {
        'name': 'setApprovalForAll',
        'type': 'function',
        'stateMutability': 'nonpayable',
        'inputs': [
            {'name': 'operator', 'type': 'address'},
            {'name': 'approved', 'type': 'bool'}
        ],
        'outputs': []
    },
    {
        'name': 'Transfer',
        'type': 'event',
        'anonymous': False,
        'inputs': [
            {'name': 'from', 'type': 'address', 'indexed': True},
            {'name': 'to', 'type': 'address', 'indexed': True},
            {'name': 'tokenId', 'type': 'uint256', 'indexed': True}
        ]
    }
]

TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text='Transfer(address,address,uint256)'))

# Seaport: OrderFulfilled(orderHash, offerer indexed, zone indexed, recipient, offer[], consideration[])
ORDER_FULFILLED_TOPIC = Web3.to_hex(Web3.keccak(
    text='OrderFulfilled(bytes32,address,address,address,'
         '(uint8,address,uint256,uint256)[],'
         '(uint8,address,uint256,uint256,address)[])'
))

# Seaport: OrderCancelled(orderHash, offerer indexed, zone indexed)
ORDER_CANCELLED_TOPIC = Web3.to_hex(Web3.keccak(text='OrderCancelled(bytes32,address,address)'))
