import asyncio
import time

from eth_account import Account
from eth_account.messages import encode_typed_data

from ticketmint.chain import ChainClient, EventConfig, MintResult, TicketInfo
from ticketmint.errors import ChainCallFailed
from ticketmint.intent import TicketIntent, intent_domain, typed_data
from ticketmint.payments import paytr_hash

NFT_ADDRESS = "0x" + "11" * 20
CUSTODY_ADDRESS = "0x" + "22" * 20
BUYER = "0x" + "33" * 20
OTHER_WALLET = "0x" + "44" * 20
OPERATOR_HEADERS = {"x-operator-key": "operator-secret"}
PRICE_WEI = 10**15


class FakeChainClient(ChainClient):
    """In-memory ticket contract with the same async surface as the web3 client."""

    def __init__(self):
        self.nft_address = NFT_ADDRESS
        self.custody_address = CUSTODY_ADDRESS
        self.events = {
            1: EventConfig(price_wei=PRICE_WEI, max_supply=100, paused=False,
                           minted=0, exists=True),
        }
        self.tokens = {}
        self.used_payments = set()
        self.mint_calls = 0
        self.transfer_calls = 0
        self.mint_delay = 0.0
        self.transfer_delay = 0.0
        self.fail_transfer = False
        self.fail_marker = False
        self.rpc_down = False
        self._next_token = 1
        self._next_tx = 1

    def _tx(self) -> str:
        tx = "0x" + f"{self._next_tx:064x}"
        self._next_tx += 1
        return tx

    async def read_event_config(self, event_id):
        return self.events.get(int(event_id), EventConfig(0, 0, False, 0, False))

    async def mint(self, *, to, uri, event_id, payment_id):
        self.mint_calls += 1
        if self.mint_delay:
            await asyncio.sleep(self.mint_delay)
        if payment_id in self.used_payments:
            return MintResult(already_used=True)
        self.used_payments.add(payment_id)
        token_id = self._next_token
        self._next_token += 1
        self.tokens[token_id] = {
            "owner": to, "event_id": str(event_id), "claimed": False,
            "payment_id": payment_id, "uri": uri,
        }
        return MintResult(False, self._tx(), str(token_id), self.nft_address)

    async def owner_of(self, token_id):
        return self.tokens[int(token_id)]["owner"]

    async def payment_id_of(self, token_id):
        return self.tokens[int(token_id)]["payment_id"]

    async def ticket_info(self, token_id):
        t = self.tokens.get(int(token_id))
        if t is None:
            raise ChainCallFailed("read", "ERC721NonexistentToken")
        return TicketInfo(owner=t["owner"], event_id=t["event_id"],
                          claimed=t["claimed"], payment_id=t["payment_id"])

    async def transfer_from_custody(self, *, token_id, to):
        self.transfer_calls += 1
        if self.transfer_delay:
            await asyncio.sleep(self.transfer_delay)
        if self.fail_transfer:
            raise ChainCallFailed("send", "nonce too low")
        t = self.tokens[int(token_id)]
        if t["owner"] != self.custody_address:
            raise ChainCallFailed("simulate", "not token owner")
        t["owner"] = to
        return self._tx()

    async def mark_claimed(self, token_id):
        if self.fail_marker:
            raise ChainCallFailed("simulate", "marker reverted")
        self.tokens[int(token_id)]["claimed"] = True
        return self._tx()

    async def block_number(self):
        if self.rpc_down:
            raise ChainCallFailed("read", "connection refused")
        return self._next_tx


def make_intent(account, merchant_order_id="ord-1", *, event_id=1,
                amount_wei=PRICE_WEI, deadline=None, split_slug="main-hall"):
    return TicketIntent(
        buyer=account.address,
        split_slug=split_slug,
        merchant_order_id=merchant_order_id,
        event_id=event_id,
        amount_wei=amount_wei,
        deadline=deadline if deadline is not None else int(time.time()) + 600,
    )


def sign_intent(account, intent, chain_id=31337):
    domain = intent_domain(NFT_ADDRESS, chain_id)
    signable = encode_typed_data(full_message=typed_data(intent, domain))
    signed = Account.sign_message(signable, private_key=account.key)
    return "0x" + bytes(signed.signature).hex()


def intent_payload(intent):
    return {
        "buyer": intent.buyer,
        "splitSlug": intent.split_slug,
        "merchantOrderId": intent.merchant_order_id,
        "eventId": str(intent.event_id),
        "amountWei": str(intent.amount_wei),
        "deadline": str(intent.deadline),
    }


def paytr_form(merchant_order_id, *, status="success", total_amount="15000",
               extra=None, salt="test-merchant-salt", key="test-merchant-key"):
    """Form fields the way PayTR posts them, with a valid hash."""
    fields = {
        "merchant_oid": merchant_order_id,
        "status": status,
        "total_amount": total_amount,
        "split_slug": "main-hall",
        "event_id": "1",
    }
    fields.update(extra or {})
    fields["hash"] = paytr_hash(merchant_order_id, salt, status, total_amount, key)
    return fields
