"""
onelaunch CLI - Command Line Interface for token launch auctions

Main entry point for all CLI commands.
"""

import asyncio
import json
import time
from dataclasses import replace
from pathlib import Path

import click

from onelaunch import __version__
from onelaunch.utils.logger import get_logger, parse_log_levels, setup_logging

logger = get_logger("cli")


def _result_to_dict(result) -> dict:
    from onelaunch.utils.validation import micros_to_price

    return {
        "launch_id": result.launch_id,
        "clearing_price": None if result.is_empty else str(micros_to_price(result.clearing_price)),
        "clearing_price_micros": result.clearing_price,
        "filled_quantity": result.filled_quantity,
        "successful_bids_count": result.successful_bids_count,
        "total_raised": result.total_raised,
        "fills": [
            {"bid_id": f.bid_id, "bidder": f.bidder, "requested": f.requested, "filled": f.filled}
            for f in result.fills
        ],
        "losing_bid_ids": list(result.losing_bid_ids),
    }


def _storage(ctx):
    from onelaunch.core.storage import StorageManager

    cfg = ctx.obj["config"]
    return StorageManager(cfg.data_dir, cfg.db_name)


def _fail(ctx, message: str):
    click.echo(f"❌ {message}", err=True)
    ctx.exit(1)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--data-dir", default=None, help="Data directory (overrides ONELAUNCH_DATA_DIR)")
@click.option("--env-file", default=None, type=click.Path(exists=True, dir_okay=False), help="dotenv file")
@click.option("--log-file", is_flag=True, help="Also write logs to the log directory")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, debug, data_dir, env_file, log_file):
    """onelaunch - Uniform-price token launch auctions"""
    import logging
    from onelaunch.core.config import load_config

    cfg = load_config(env_file)
    if data_dir:
        cfg.data_dir = Path(data_dir).expanduser()

    try:
        setup_logging(
            level=logging.DEBUG if debug else cfg.log_level,
            log_dir=str(cfg.log_dir),
            log_to_file=log_file,
            subsystem_levels=parse_log_levels(cfg.log_levels),
        )
    except ValueError as e:
        raise click.UsageError(f"bad logging configuration: {e}")

    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg


# =============================================================================
# Commitment / Intent / Permit Commands
# =============================================================================


@cli.command("commit")
@click.option("--launch-id", required=True, help="Launch being bid on")
@click.option("--price", required=True, help="Price per token, e.g. 1.25")
@click.option("--quantity", required=True, type=int, help="Tokens bid for")
@click.option("--bidder", required=True, help="Bidder address (0x...)")
@click.option("--nonce", default="", help="Blinding nonce (random if omitted)")
@click.pass_context
def commit_cmd(ctx, launch_id, price, quantity, bidder, nonce):
    """Print a sealed-bid commitment"""
    from onelaunch.core.commitment import create_bid_commitment
    from onelaunch.core.errors import LaunchError

    try:
        commitment, reveal = create_bid_commitment(launch_id, price, quantity, bidder, nonce)
    except LaunchError as e:
        _fail(ctx, str(e))
        return

    click.echo(json.dumps({
        "commitment": "0x" + commitment.hex(),
        "launch_id": reveal.launch_id,
        "price": str(reveal.price),
        "quantity": reveal.quantity,
        "bidder": reveal.bidder,
        "nonce": reveal.nonce,
    }, indent=2))


@cli.group()
def intent():
    """Bid intent commands"""
    pass


@intent.command("build")
@click.option("--bidder", required=True, help="Bidder address")
@click.option("--bid-token", required=True, help="Token paid with")
@click.option("--amount", required=True, help="Amount of bid token, decimal")
@click.option("--decimals", required=True, type=int, help="Bid token decimals")
@click.option("--auction-token", required=True, help="Auctioned token")
@click.option("--max-tokens", required=True, help="Most auction tokens wanted")
@click.option("--max-price", required=True, help="Price ceiling per token in USDC")
@click.option("--private-key", default=None, help="Hex key to sign the intent with")
@click.pass_context
def intent_build(ctx, bidder, bid_token, amount, decimals, auction_token, max_tokens, max_price, private_key):
    """Build (and optionally sign) a bid intent"""
    from onelaunch.crypto import bytes_to_hex, hex_to_bytes
    from onelaunch.core.errors import LaunchError
    from onelaunch.core.intent import (
        build_bid_intent,
        intent_digest,
        intent_id,
        sign_bid_intent,
        validate_bid_intent,
    )

    cfg = ctx.obj["config"]
    try:
        built = build_bid_intent(
            bidder, bid_token, amount, decimals, auction_token, max_tokens, max_price,
            ttl=cfg.intent_ttl_seconds,
        )
    except LaunchError as e:
        _fail(ctx, str(e))
        return

    output = {
        "intent": built.to_message(),
        "valid": validate_bid_intent(built),
        "digest": bytes_to_hex(intent_digest(built, cfg.intent_domain)),
    }
    if private_key:
        signature = sign_bid_intent(built, hex_to_bytes(private_key), cfg.intent_domain)
        output["signature"] = bytes_to_hex(signature)
        output["intent_id"] = intent_id(signature)

    click.echo(json.dumps(output, indent=2))


@cli.group()
def permit():
    """Token permit commands"""
    pass


@permit.command("max-amount")
@click.option("--price", required=True, help="Price per token")
@click.option("--quantity", required=True, type=int, help="Tokens bid for")
@click.option("--decimals", default=None, type=int, help="Settlement asset decimals")
@click.pass_context
def permit_max_amount(ctx, price, quantity, decimals):
    """Print the buffered amount a bidder should authorize"""
    from onelaunch.core.errors import LaunchError
    from onelaunch.core.intent import calculate_max_authorized_amount

    cfg = ctx.obj["config"]
    try:
        amount = calculate_max_authorized_amount(
            price,
            quantity,
            decimals=cfg.usdc_decimals if decimals is None else decimals,
            buffer_bps=cfg.permit_buffer_bps,
        )
    except LaunchError as e:
        _fail(ctx, str(e))
        return
    click.echo(str(amount))


# =============================================================================
# Clearing Command
# =============================================================================


@cli.command("clear")
@click.argument("bids_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--target", required=True, type=int, help="Target allocation")
@click.option("--launch-id", default="offline", help="Launch id to report")
@click.pass_context
def clear_cmd(ctx, bids_file, target, launch_id):
    """
    Clear a JSON list of bids offline.

    Each bid: {"bid_id", "price", "quantity", "created_at", "bidder"?}
    """
    from onelaunch.core.auction import BidSnapshot, LaunchSnapshot, clear_auction
    from onelaunch.core.errors import LaunchError
    from onelaunch.utils.validation import price_to_micros

    try:
        raw = json.loads(Path(bids_file).read_text())
        bids = [
            BidSnapshot(
                bid_id=str(b["bid_id"]),
                bidder=b.get("bidder", ""),
                price=price_to_micros(b["price"]),
                quantity=int(b["quantity"]),
                created_at=int(b.get("created_at", 0)),
            )
            for b in raw
        ]
        result = clear_auction(LaunchSnapshot(launch_id, target, 0, tuple(bids)))
    except (LaunchError, KeyError, ValueError) as e:
        _fail(ctx, f"cannot clear {bids_file}: {e}")
        return

    click.echo(json.dumps(_result_to_dict(result), indent=2))


# =============================================================================
# Launch Commands
# =============================================================================


@cli.group()
def launch():
    """Launch management commands"""
    pass


@launch.command("create")
@click.option("--name", required=True, help="Token name")
@click.option("--symbol", required=True, help="Token symbol")
@click.option("--supply", required=True, type=int, help="Total supply")
@click.option("--target", required=True, type=int, help="Tokens offered in the auction")
@click.option("--duration", default=86400, type=int, help="Auction length in seconds")
@click.option("--token-address", default=None, help="Auction token address")
@click.pass_context
def launch_create(ctx, name, symbol, supply, target, duration, token_address):
    """Create a launch"""
    from onelaunch.core.auction.book import BidBook
    from onelaunch.core.errors import LaunchError

    storage = _storage(ctx)
    try:
        created = BidBook(storage, ctx.obj["config"]).create_launch(
            name, symbol, supply, target, int(time.time()) + duration, token_address=token_address,
        )
    except LaunchError as e:
        _fail(ctx, str(e))
        return
    finally:
        storage.close()

    click.echo(f"✓ Launch created: {created.launch_id}")
    click.echo(f"  Token: {created.token_name} ({created.token_symbol})")
    click.echo(f"  Target: {created.target_allocation} of {created.total_supply}")
    click.echo(f"  Ends at: {created.end_time}")


@launch.command("show")
@click.argument("launch_id")
@click.pass_context
def launch_show(ctx, launch_id):
    """Show a launch and its bid statistics"""
    storage = _storage(ctx)
    try:
        found = storage.get_launch(launch_id)
        if found is None:
            _fail(ctx, f"Launch '{launch_id}' not found")
            return
        stats = storage.bid_stats(launch_id)
        settlement = storage.get_auction_settlement(launch_id)
    finally:
        storage.close()

    click.echo(json.dumps({
        "launch": found.to_dict(),
        "bids": stats,
        "settlement": settlement.to_dict() if settlement else None,
    }, indent=2))


@launch.command("settle")
@click.argument("launch_id")
@click.option("--slippage-bps", default=0, type=int, help="Simulated executor slippage")
@click.option("--force", is_flag=True, help="Clear even if the auction has not ended")
@click.pass_context
def launch_settle(ctx, launch_id, slippage_bps, force):
    """Clear a launch and settle winners with the in-memory executor"""
    from onelaunch.core.auction.coordinator import ClearingCoordinator
    from onelaunch.core.errors import LaunchError
    from onelaunch.core.settlement import MockDistributor, MockExecutor, SettlementTracker

    cfg = replace(ctx.obj["config"], executor_poll_interval=0.0)
    storage = _storage(ctx)
    try:
        found = storage.get_launch(launch_id)
        if found is None:
            _fail(ctx, f"Launch '{launch_id}' not found")
            return

        now = max(int(time.time()), found.end_time) if force else int(time.time())
        result = ClearingCoordinator(storage, cfg).clear_launch(launch_id, now=now)
        click.echo(json.dumps(_result_to_dict(result), indent=2))
        if result.is_empty:
            click.echo("No bids filled; launch expired.")
            return

        tracker = SettlementTracker(
            MockExecutor(slippage_bps=slippage_bps), MockDistributor(), cfg, store=storage,
        )
        tracker.open_records(result, deadline=now + cfg.intent_ttl_seconds)
        batch = asyncio.run(tracker.run_batch(launch_id, result.clearing_price))
    except LaunchError as e:
        _fail(ctx, str(e))
        return
    finally:
        storage.close()

    click.echo(f"✓ Settled {batch.distributed_count}/{batch.total_records} winners")
    click.echo(f"  Collected: {batch.usdc_collected}")
    click.echo(f"  Failed: {batch.failed_count}, expired: {batch.expired_count}")
    if batch.errors:
        click.echo(f"  Errors: {len(batch.errors)}")


@launch.command("resume")
@click.argument("launch_id")
@click.option("--slippage-bps", default=0, type=int, help="Simulated executor slippage")
@click.pass_context
def launch_resume(ctx, launch_id, slippage_bps):
    """Resume unresolved settlement records after a restart"""
    from onelaunch.core.errors import LaunchError
    from onelaunch.core.settlement import MockDistributor, MockExecutor, SettlementTracker

    cfg = replace(ctx.obj["config"], executor_poll_interval=0.0)
    storage = _storage(ctx)
    try:
        found = storage.get_launch(launch_id)
        if found is None:
            _fail(ctx, f"Launch '{launch_id}' not found")
            return

        tracker = SettlementTracker(
            MockExecutor(slippage_bps=slippage_bps), MockDistributor(), cfg, store=storage,
        )
        if not tracker.load(launch_id):
            click.echo("Nothing to resume.")
            return
        batch = asyncio.run(tracker.run_batch(launch_id, found.clearing_price))
    except LaunchError as e:
        _fail(ctx, str(e))
        return
    finally:
        storage.close()

    click.echo(f"✓ Resumed {batch.distributed_count}/{batch.total_records} records")
    if batch.errors:
        click.echo(f"  Errors: {len(batch.errors)}")


# =============================================================================
# Bid Commands
# =============================================================================


@cli.group()
def bid():
    """Bid commands"""
    pass


@bid.command("submit")
@click.option("--launch-id", required=True, help="Launch to bid on")
@click.option("--bidder", required=True, help="Bidder address")
@click.option("--price", required=True, help="Price per token")
@click.option("--quantity", required=True, type=int, help="Tokens wanted")
@click.pass_context
def bid_submit(ctx, launch_id, bidder, price, quantity):
    """Submit an open bid"""
    from onelaunch.core.auction.book import BidBook
    from onelaunch.core.errors import LaunchError

    storage = _storage(ctx)
    try:
        placed = BidBook(storage, ctx.obj["config"]).submit_bid(launch_id, bidder, price, quantity)
    except LaunchError as e:
        _fail(ctx, str(e))
        return
    finally:
        storage.close()

    click.echo(f"✓ Bid submitted: {placed.bid_id}")
    click.echo(f"  {placed.quantity} @ {price} ({placed.order_status.value})")


@bid.command("cancel")
@click.argument("bid_id")
@click.option("--bidder", default=None, help="Bidder address (ownership check)")
@click.pass_context
def bid_cancel(ctx, bid_id, bidder):
    """Cancel a bid before clearing"""
    from onelaunch.core.auction.book import BidBook
    from onelaunch.core.errors import LaunchError

    storage = _storage(ctx)
    try:
        BidBook(storage, ctx.obj["config"]).cancel_bid(bid_id, bidder)
    except LaunchError as e:
        _fail(ctx, str(e))
        return
    finally:
        storage.close()

    click.echo(f"✓ Bid cancelled: {bid_id}")


# =============================================================================
# Demo Command
# =============================================================================


@cli.command("demo")
@click.option("--slippage-bps", default=50, type=int, help="Simulated executor slippage")
@click.pass_context
def demo(ctx, slippage_bps):
    """Run an end-to-end launch with an in-memory executor"""
    import tempfile
    from onelaunch.crypto import generate_keypair
    from onelaunch.core.auction.book import BidBook
    from onelaunch.core.auction.coordinator import ClearingCoordinator
    from onelaunch.core.commitment import create_bid_commitment
    from onelaunch.core.settlement import MockDistributor, MockExecutor, SettlementTracker
    from onelaunch.core.storage import StorageManager

    click.echo("=" * 60)
    click.echo("  ONELAUNCH - DEMO")
    click.echo("=" * 60)
    click.echo()

    with tempfile.TemporaryDirectory() as tmp:
        cfg = replace(ctx.obj["config"], data_dir=Path(tmp), executor_poll_interval=0.0)
        storage = StorageManager(Path(tmp), cfg.db_name)
        clock = [time.time()]

        def now():
            return clock[0]

        try:
            book = BidBook(storage, cfg, clock=now)
            coordinator = ClearingCoordinator(storage, cfg, clock=now)

            click.echo("📦 Creating launch...")
            created = book.create_launch("Demo Token", "DEMO", 1_000_000, 120, int(now()) + 3600)
            click.echo(f"  ✓ {created.launch_id}: 120 DEMO on offer")
            click.echo()

            alice, bob, carol = (generate_keypair().address for _ in range(3))

            click.echo("🎯 Bidding...")
            book.submit_bid(created.launch_id, alice, "5", 100, created_at=1)
            book.submit_bid(created.launch_id, bob, "5", 50, created_at=2)
            commitment, reveal = create_bid_commitment(created.launch_id, "3", 200, carol)
            sealed = book.submit_sealed_bid(created.launch_id, carol, commitment, created_at=3)
            click.echo("  ✓ Alice 100 @ 5, Bob 50 @ 5, Carol sealed")
            book.reveal_bid(sealed.bid_id, reveal.price, reveal.quantity, reveal.nonce)
            click.echo("  ✓ Carol revealed 200 @ 3")
            click.echo()

            click.echo("⚖️  Clearing...")
            clock[0] = created.end_time
            result = coordinator.clear_launch(created.launch_id)
            click.echo(f"  ✓ Clearing price: {_result_to_dict(result)['clearing_price']}")
            for fill in result.fills:
                click.echo(f"    {fill.bidder[:10]}... filled {fill.filled}/{fill.requested}")
            click.echo()

            click.echo("🔁 Settling winners...")
            tracker = SettlementTracker(
                MockExecutor(slippage_bps=slippage_bps), MockDistributor(), cfg, store=storage, clock=now,
            )
            tracker.open_records(result, deadline=int(now()) + 86400)
            batch = asyncio.run(tracker.run_batch(created.launch_id, result.clearing_price))
            for record in tracker.records_for(created.launch_id):
                click.echo(
                    f"    {record.bidder[:10]}... {record.status.value} "
                    f"paid {record.actual_output} (effective {record.effective_price})"
                )
            click.echo()

            click.echo("📊 Final Statistics:")
            click.echo(f"  Bids: {book.stats(created.launch_id)['by_status']}")
            click.echo(f"  Raised at clearing: {result.total_raised}")
            click.echo(f"  Collected after slippage: {batch.usdc_collected}")
            click.echo(f"  Distributed: {batch.distributed_count}/{batch.total_records}")
        finally:
            storage.close()

    click.echo()
    click.echo("✅ Demo complete!")


if __name__ == "__main__":
    cli()
