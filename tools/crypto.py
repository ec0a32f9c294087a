"""
Crypto Tools

Token prices, price-triggered purchases, and wallet funding.

- check_token_price: Spot price for a supported pair
- monitor_token_and_buy: "Buy X when TOKEN drops below Y"
- list_price_monitors / cancel_price_monitor: Manage the caller's watches
- check_wallet_balance: ETH + USDC balance on Base Sepolia
- top_up_account: Coinbase onramp link for buying crypto with fiat
"""

import logging
import time
import uuid
from decimal import Decimal

import httpx
from eth_utils import from_wei, function_signature_to_4byte_selector, is_address, to_checksum_address

from config import get_section
from price_monitor import SUPPORTED_SYMBOLS, RegistrationError, format_price, normalize_symbol
from tools import ToolContext, tool, tool_error

logger = logging.getLogger(__name__)

# Circle USDC on Base Sepolia
USDC_BASE_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
USDC_DECIMALS = 6
DEFAULT_CLIENT_IP = "181.10.161.120"


def _services(ctx: ToolContext) -> dict:
    return get_section(getattr(ctx.agent, "config", {}) or {}, "services")


@tool
async def check_token_price(symbol: str, ctx: ToolContext, reasoning: str = "") -> dict:
    """Check the current price of a cryptocurrency token.

    Use this when a user asks for the price of a token like BTC, ETH, SOL.

    Args:
        symbol: Token pair such as "ETH/USD" (a bare "ETH" is quoted in USD)
        reasoning: Why you are checking this price
    """
    symbol = normalize_symbol(symbol)
    if symbol not in SUPPORTED_SYMBOLS:
        return tool_error(f"Unsupported symbol {symbol}", fix=f"Use one of: {', '.join(SUPPORTED_SYMBOLS)}")

    logger.info("Checking price for %s (%s)", symbol, reasoning)
    try:
        data = await ctx.agent.price_feed.get_price(symbol)
    except (httpx.HTTPError, ValueError) as e:
        return tool_error(f"Price lookup failed: {e}", symbol=symbol)

    if not data.get("success"):
        return tool_error(data.get("error") or "Unknown price API error", symbol=symbol)

    return {
        "success": True,
        "symbol": data.get("symbol", symbol),
        "price": data.get("price"),
        "timestamp": data.get("timestamp"),
        "message": f"The current price of {data.get('symbol', symbol)} is ${data.get('price')}",
    }


@tool
async def monitor_token_and_buy(
    symbol: str,
    threshold: float,
    product_url: str,
    ctx: ToolContext,
    size: str = "Any",
    reasoning: str = "",
) -> dict:
    """Watch a token price and automatically buy a Shopify product when it drops below a threshold.

    Use this when a user says "buy X when Y hits Z" or similar conditional purchase requests.

    Args:
        symbol: Token pair to watch, e.g. "ETH/USD"
        threshold: Price in USD. The purchase triggers when the price drops BELOW this.
        product_url: Shopify product URL to buy
        size: Size/variant to buy (e.g. "Medium", "US 10")
        reasoning: Why you are setting up this monitor
    """
    symbol = normalize_symbol(symbol)
    logger.info("Monitor for %s: buy %s when %s < %s (%s)",
                ctx.recipient, product_url, symbol, threshold, reasoning)

    try:
        session_id = await ctx.agent.monitor.start_monitoring(
            symbol, threshold, ctx.recipient, product_url, size
        )
    except RegistrationError as e:
        return tool_error(str(e), symbol=symbol, threshold=threshold)

    return {
        "success": True,
        "session_id": session_id,
        "symbol": symbol,
        "threshold": threshold,
        "product_url": product_url,
        "size": size,
        "message": (
            f"I've set up a monitor for {symbol}. If it drops below "
            f"${format_price(float(threshold))}, I'll automatically buy the item for you."
        ),
    }


@tool
def list_price_monitors(ctx: ToolContext) -> dict:
    """List the price monitors currently running for the person you are talking to."""
    sessions = ctx.agent.monitor.list_sessions(ctx.recipient)
    return {
        "count": len(sessions),
        "monitors": [
            {
                "session_id": s.session_id,
                "symbol": s.symbol,
                "threshold": s.threshold,
                "product_url": s.product_url,
                "size": s.variant,
                "last_price": s.last_price,
            }
            for s in sessions
        ],
    }


@tool
async def cancel_price_monitor(session_id: str, ctx: ToolContext) -> dict:
    """Stop one of the user's price monitors so it never triggers a purchase.

    Args:
        session_id: ID from list_price_monitors
    """
    if not await ctx.agent.monitor.cancel_monitoring(session_id, user_handle=ctx.recipient):
        return tool_error(f"No active monitor {session_id}", fix="Call list_price_monitors for valid IDs")
    return {"cancelled": True, "session_id": session_id}


async def _rpc(client: httpx.AsyncClient, rpc_url: str, method: str, params: list):
    response = await client.post(rpc_url, json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params})
    response.raise_for_status()
    payload = response.json()
    if payload.get("error"):
        raise ValueError(payload["error"].get("message", str(payload["error"])))
    return payload["result"]


@tool
async def check_wallet_balance(wallet_address: str, ctx: ToolContext, reasoning: str = "") -> dict:
    """Check ETH and USDC balance for a wallet on Base Sepolia testnet.

    Use this when the user asks about their wallet balance or how much funds they have.

    Args:
        wallet_address: Ethereum wallet address (0x...)
        reasoning: Why you are checking this balance
    """
    if not is_address(wallet_address):
        return tool_error("Invalid wallet address format", wallet_address=wallet_address)

    address = to_checksum_address(wallet_address)
    rpc_url = _services(ctx).get("rpc_url") or "https://sepolia.base.org"
    logger.info("Checking wallet balance for %s (%s)", address, reasoning)

    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            balance_wei = int(await _rpc(client, rpc_url, "eth_getBalance", [address, "latest"]), 16)

            # USDC failure shouldn't hide the ETH balance
            balance_usdc = Decimal(0)
            selector = function_signature_to_4byte_selector("balanceOf(address)").hex()
            call_data = "0x" + selector + address[2:].lower().rjust(64, "0")
            try:
                raw = await _rpc(client, rpc_url, "eth_call",
                                 [{"to": USDC_BASE_SEPOLIA, "data": call_data}, "latest"])
                balance_usdc = Decimal(int(raw, 16)) / (10 ** USDC_DECIMALS)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Failed to fetch USDC balance for %s: %s", address, e)
    except (httpx.HTTPError, ValueError, KeyError) as e:
        return tool_error(f"Balance check failed: {e}", wallet_address=address)

    balance_eth = from_wei(balance_wei, "ether")
    return {
        "success": True,
        "wallet_address": address,
        "balance": {"wei": str(balance_wei), "eth": str(balance_eth), "usdc": str(balance_usdc)},
        "network": "Base Sepolia",
        "message": f"Wallet {address} has {balance_eth} ETH and {balance_usdc} USDC on Base Sepolia",
    }


@tool
async def top_up_account(
    destination_address: str,
    payment_amount: str,
    ctx: ToolContext,
    payment_currency: str = "USD",
    purchase_currency: str = "USDC",
    destination_network: str = "base",
    payment_method: str = "CARD",
    country: str = "US",
    subdivision: str = "NY",
    partner_user_ref: str = None,
    reasoning: str = "",
) -> dict:
    """Generate a Coinbase onramp link so the user can top up their wallet with fiat.

    Use this when the user wants to buy crypto, add funds via card/bank, or convert USD to USDC.
    Include the returned onramp_url in your reply.

    Args:
        destination_address: Wallet address to receive the funds (0x...)
        payment_amount: Fiat amount to spend, e.g. "100.00"
        payment_currency: Fiat currency (USD, EUR, ...)
        purchase_currency: Crypto to buy (USDC, ETH, ...)
        destination_network: Network (base, ethereum, polygon, ...)
        payment_method: CARD, ACH or WIRE
        country: Country code (US, GB, ...)
        subdivision: State/province code (NY, CA, ...)
        partner_user_ref: Optional unique user reference
        reasoning: Why you are initiating this top-up
    """
    if not is_address(destination_address):
        return tool_error("Invalid wallet address format", destination_address=destination_address)

    services = _services(ctx)
    api_url = services.get("onramp_url")
    if not api_url:
        return tool_error("Onramp service not configured", fix="Set COINBASE_ONRAMP_API")

    body = {
        "destination_address": destination_address,
        "destination_network": destination_network,
        "purchase_currency": purchase_currency,
        "payment_amount": payment_amount,
        "payment_currency": payment_currency,
        "payment_method": payment_method,
        "country": country,
        "subdivision": subdivision,
        "client_ip": DEFAULT_CLIENT_IP,
        "redirect_url": services.get("topup_redirect_url"),
        "partner_user_ref": partner_user_ref or f"user_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
    }
    logger.info("Top-up for %s: %s %s -> %s (%s)",
                destination_address, payment_amount, payment_currency, purchase_currency, reasoning)

    try:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(api_url, json=body)
        data = response.json()
    except httpx.HTTPError as e:
        return tool_error(f"Onramp request failed: {e}", destination_address=destination_address)
    except ValueError:
        return tool_error(f"Onramp service returned non-JSON response: {response.status_code} {response.text[:200]}")

    if response.status_code >= 400:
        return tool_error(f"Onramp request failed: {response.status_code}", details=data)

    return {
        "success": True,
        "destination_address": destination_address,
        "payment_amount": payment_amount,
        "payment_currency": payment_currency,
        "purchase_currency": purchase_currency,
        "destination_network": destination_network,
        "onramp_url": data.get("onramp_url") or data.get("url") or data.get("link"),
        "message": (
            f"Generated top-up link for {payment_amount} {payment_currency} "
            f"to buy {purchase_currency} on {destination_network}"
        ),
    }
