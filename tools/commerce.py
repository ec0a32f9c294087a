"""
Commerce Tools

Product search and payment-gated actions. All payments go through the
agent's PurchaseExecutor, which signs with the configured wallet.

- search_products: Shopify product search
- purchase_product: Buy a product right now
- book_ride: Book an Uber ride
- pay_for_service: Call any x402-gated endpoint
"""

import logging

import httpx

from config import get_section
from purchasing import ConfigurationError, PurchaseError
from tools import ToolContext, tool, tool_error

logger = logging.getLogger(__name__)


@tool
async def search_products(query: str, ctx: ToolContext, num_results: int = 5, reasoning: str = "") -> dict:
    """Search Shopify products. Use when the user is looking for something to buy.

    Args:
        query: What to look for, e.g. "black leather jacket"
        num_results: Number of results to return (1-50)
        reasoning: Why you are searching
    """
    services = get_section(getattr(ctx.agent, "config", {}) or {}, "services")
    api_url = services.get("product_search_url")
    if not api_url:
        return tool_error("Product search not configured", fix="Set PRODUCT_SEARCH_URL")

    logger.info("Searching products: %r (%s)", query, reasoning)
    try:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(api_url, json={"query": query, "num_results": num_results})
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        return tool_error(f"Product search failed: {e}", query=query)

    if not data.get("success"):
        return {"success": True, "query": query, "count": 0, "results": [],
                "message": f'No products found matching "{query}"'}
    return {
        "success": True,
        "query": query,
        "count": data.get("count", len(data.get("results") or [])),
        "results": data.get("results") or [],
        "message": f'Found {data.get("count")} products matching "{query}"',
    }


@tool
async def purchase_product(product_url: str, ctx: ToolContext, size: str = "Any", reasoning: str = "") -> dict:
    """Buy a Shopify product right now, paying with the wallet.

    The user gets progress updates by message while the order runs.

    Args:
        product_url: Shopify product URL
        size: Size/variant (e.g. "Medium", "US 10")
        reasoning: Why you are buying this now
    """
    logger.info("Purchasing %s (%s) for %s (%s)", product_url, size, ctx.recipient, reasoning)
    try:
        result = await ctx.agent.purchaser.purchase_product(product_url, size, ctx.recipient)
    except ConfigurationError as e:
        return tool_error(str(e), fix="Set WALLET_PRIVATE_KEY")
    except PurchaseError as e:
        return tool_error(f"Purchase failed: {e}", product_url=product_url)
    return {"success": True, "product_url": product_url, "size": size, "task": result["data"]}


@tool
async def book_ride(origin: str, destination: str, ctx: ToolContext, reasoning: str = "") -> dict:
    """Book an Uber ride from one place to another. Payment is handled automatically.

    Args:
        origin: Pickup address
        destination: Dropoff address
        reasoning: Why you are booking the ride
    """
    logger.info("Booking ride %s -> %s for %s (%s)", origin, destination, ctx.recipient, reasoning)
    try:
        result = await ctx.agent.purchaser.book_ride(origin, destination, ctx.recipient)
    except ConfigurationError as e:
        return tool_error(str(e), fix="Set WALLET_PRIVATE_KEY")
    except PurchaseError as e:
        return tool_error(f"Ride booking failed: {e}", origin=origin, destination=destination)
    return {"success": True, "origin": origin, "destination": destination, "task": result["data"]}


@tool
async def pay_for_service(url: str, ctx: ToolContext, method: str = "POST", data: dict = None,
                          reasoning: str = "") -> dict:
    """Access an x402-gated service or API by paying with crypto.

    For product purchases prefer purchase_product.

    Args:
        url: Full URL of the payment-gated endpoint
        method: HTTP method (GET, POST, ...)
        data: JSON body for the request
        reasoning: Why you are paying for this service
    """
    logger.info("Paying for service %s %s (%s)", method, url, reasoning)
    try:
        return await ctx.agent.purchaser.pay_for_service(url, method, data, user_handle=ctx.recipient)
    except ConfigurationError as e:
        return tool_error(str(e), fix="Set WALLET_PRIVATE_KEY")
    except (PurchaseError, httpx.HTTPError) as e:
        return tool_error(f"Payment failed: {e}", url=url)
