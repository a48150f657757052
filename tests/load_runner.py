# tests/load_runner.py
"""
Load generator for the order book game server.

Seats a table of bot players, then drives /api/submitOrder and
/api/cancelOrders at a constant or spiking rate. Tighten-or-trade
rejections are part of normal play and are counted separately from
transport failures.
"""

import asyncio
import aiohttp
import time
import json
import random
import statistics
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Dict, Any, Optional, Tuple
from collections import defaultdict
import argparse
import logging
from datetime import datetime
import csv

logger = logging.getLogger(__name__)

# Error codes that mean "the game said no", not "the server broke"
GAME_REJECTIONS = {"TIGHTEN_OR_TRADE", "INSUFFICIENT_LIQUIDITY", "NOT_YOUR_TURN"}


@dataclass
class RequestResult:
    """Outcome of one API call"""
    timestamp: float
    duration_ms: float
    success: bool
    action: str = "submit"
    status_code: Optional[int] = None
    error: Optional[str] = None
    order_id: Optional[int] = None
    trades: int = 0
    volume: int = 0
    version: Optional[int] = None


@dataclass
class MetricsCollector:
    """Latency, outcome and game-level counters for one run"""
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    total_requests: int = 0
    accepted: int = 0
    rejected: int = 0
    failed: int = 0

    response_times: List[float] = field(default_factory=list)

    orders_accepted: int = 0
    cancels: int = 0
    trades_executed: int = 0
    contracts_traded: int = 0

    rejection_codes: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    error_types: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    status_codes: Dict[int, int] = field(default_factory=lambda: defaultdict(int))

    active_requests: int = 0
    peak_requests: int = 0

    def add_result(self, result: RequestResult):
        self.total_requests += 1
        self.response_times.append(result.duration_ms)
        if result.status_code:
            self.status_codes[result.status_code] += 1

        if result.success:
            self.accepted += 1
            if result.action == "cancel":
                self.cancels += 1
            else:
                self.orders_accepted += 1
            self.trades_executed += result.trades
            self.contracts_traded += result.volume
        elif result.error in GAME_REJECTIONS:
            self.rejected += 1
            self.rejection_codes[result.error] += 1
        else:
            self.failed += 1
            self.error_types[result.error or "unknown"] += 1

    def get_percentiles(self, percentiles: List[float] = None) -> Dict[str, float]:
        if not self.response_times:
            return {}
        percentiles = percentiles or [50, 90, 95, 99]
        sorted_times = sorted(self.response_times)
        result = {}
        for p in percentiles:
            index = max(0, min(int(len(sorted_times) * p / 100) - 1, len(sorted_times) - 1))
            result[f"p{p}"] = sorted_times[index]
        return result

    def get_summary(self) -> Dict[str, Any]:
        duration = (self.end_time or time.time()) - self.start_time
        times = self.response_times
        return {
            "test_duration_seconds": round(duration, 2),
            "total_requests": self.total_requests,
            "accepted": self.accepted,
            "rejected_by_game": self.rejected,
            "failed": self.failed,
            "requests_per_second": round(self.total_requests / max(duration, 1), 2),
            "orders_accepted": self.orders_accepted,
            "cancels": self.cancels,
            "trades_executed": self.trades_executed,
            "contracts_traded": self.contracts_traded,
            "average_latency_ms": round(statistics.mean(times), 2) if times else 0,
            "median_latency_ms": round(statistics.median(times), 2) if times else 0,
            "max_latency_ms": round(max(times), 2) if times else 0,
            "percentiles": {k: round(v, 2) for k, v in self.get_percentiles().items()},
            "peak_concurrent_requests": self.peak_requests,
            "rejection_codes": dict(self.rejection_codes),
            "error_types": dict(self.error_types),
            "status_codes": dict(self.status_codes),
        }


class LoadTester:
    """Async driver that plays many bots against one game"""

    def __init__(self, base_url: str = "http://localhost:8080", players: int = 8,
                 max_connections: int = 100, timeout: int = 30,
                 fair_value: float = 20.0, tick: float = 0.01,
                 cancel_ratio: float = 0.1, market_ratio: float = 0.1):
        self.base_url = base_url.rstrip("/")
        self.players = [f"bot{i:02d}" for i in range(players)]
        self.max_connections = max_connections
        self.timeout = timeout
        self.fair_value = fair_value
        self.tick = tick
        self.tick_size = Decimal(str(tick))
        self.cancel_ratio = cancel_ratio
        self.market_ratio = market_ratio
        self.session: Optional[aiohttp.ClientSession] = None
        self.semaphore: Optional[asyncio.Semaphore] = None
        self.metrics = MetricsCollector()
        self.running = True

    async def __aenter__(self):
        connector = aiohttp.TCPConnector(limit=self.max_connections)
        self.session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"Content-Type": "application/json"},
        )
        self.semaphore = asyncio.Semaphore(self.max_connections)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()

    async def seat_players(self) -> None:
        """Register every bot with a random secret count."""
        for name in self.players:
            payload = {"name": name, "count": random.randint(0, 10)}
            async with self.session.post(f"{self.base_url}/api/addPlayer", json=payload) as response:
                if response.status != 200:
                    raise RuntimeError(f"Could not seat {name}: HTTP {response.status} {await response.text()}")
        logger.info(f"Seated {len(self.players)} players")

    def generate_action(self) -> Tuple[str, str, Dict[str, Any]]:
        """Pick the next bot move as (action, path, body)."""
        player = random.choice(self.players)
        if random.random() < self.cancel_ratio:
            return "cancel", "/api/cancelOrders", {"playerName": player}

        side = random.choice(["bid", "ask"])
        body = {"playerName": player, "side": side, "size": random.randint(1, 5)}
        if random.random() < self.market_ratio:
            body["orderType"] = "market"
            return "submit", "/api/submitOrder", body

        # Quotes cluster around fair value, leaning to the passive side
        edge = abs(random.gauss(0, self.fair_value * 0.05))
        price = self.fair_value - edge if side == "bid" else self.fair_value + edge
        ticks = max(1, round(price / self.tick))
        body["price"] = str(ticks * self.tick_size)
        return "submit", "/api/submitOrder", body

    async def send_one(self) -> RequestResult:
        """Send one bot action and time it."""
        action, path, body = self.generate_action()
        start_time = time.time()

        async with self.semaphore:
            self.metrics.active_requests += 1
            self.metrics.peak_requests = max(self.metrics.peak_requests, self.metrics.active_requests)
            try:
                async with self.session.post(f"{self.base_url}{path}", json=body) as response:
                    text = await response.text()
                    result = RequestResult(
                        timestamp=start_time,
                        duration_ms=(time.time() - start_time) * 1000,
                        success=response.status == 200,
                        action=action,
                        status_code=response.status,
                    )
                    try:
                        data = json.loads(text)
                    except json.JSONDecodeError:
                        result.success = False
                        result.error = "Invalid JSON response"
                        return result

                    if result.success:
                        trades = data.get("trades", [])
                        result.order_id = data.get("order_id")
                        result.trades = len(trades)
                        result.volume = sum(trade["size"] for trade in trades)
                    else:
                        result.error = data.get("error_code") or f"HTTP {response.status}"
                    return result

            except asyncio.TimeoutError:
                return RequestResult(start_time, (time.time() - start_time) * 1000, False,
                                     action=action, error="Timeout")
            except aiohttp.ClientError as e:
                return RequestResult(start_time, (time.time() - start_time) * 1000, False,
                                     action=action, error=type(e).__name__)
            finally:
                self.metrics.active_requests -= 1

    def _record(self, task: asyncio.Task) -> None:
        """Done callback: count the task's result, or a failure if it raised."""
        if task.cancelled():
            self.metrics.add_result(RequestResult(time.time(), 0.0, False, error="Cancelled"))
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Request task failed: {exc!r}")
            self.metrics.add_result(RequestResult(time.time(), 0.0, False, error=type(exc).__name__))
            return
        self.metrics.add_result(task.result())

    async def _drive(self, rate_at) -> None:
        """Fire requests at rate_at(elapsed) per second until stopped."""
        tasks = set()
        start = time.time()
        while self.running:
            rate = rate_at(time.time() - start)
            if rate is None:
                break
            task = asyncio.create_task(self.send_one())
            task.add_done_callback(self._record)
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            await asyncio.sleep(1.0 / rate)

        if tasks:
            logger.info(f"Waiting for {len(tasks)} in-flight requests...")
            await asyncio.gather(*tasks, return_exceptions=True)
        self.metrics.end_time = time.time()

    async def run_constant_rate_test(self, rate_per_second: int, duration_seconds: int):
        logger.info(f"Starting constant rate test: {rate_per_second} req/sec for {duration_seconds}s")
        await self._drive(lambda elapsed: rate_per_second if elapsed < duration_seconds else None)
        logger.info("Constant rate test completed")

    async def run_spike_test(self, peak_rate: int, spike_duration: int,
                             baseline_rate: int, total_duration: int):
        logger.info(f"Starting spike test: baseline {baseline_rate}/sec, spike to {peak_rate}/sec")
        spike_start = (total_duration - spike_duration) / 2
        spike_end = spike_start + spike_duration

        def rate_at(elapsed):
            if elapsed >= total_duration:
                return None
            return peak_rate if spike_start <= elapsed <= spike_end else baseline_rate

        await self._drive(rate_at)
        logger.info("Spike test completed")

    async def fetch_state(self) -> Dict[str, Any]:
        async with self.session.get(f"{self.base_url}/api/state") as response:
            return await response.json()

    async def settle(self, admin_token: str) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {admin_token}"}
        async with self.session.post(f"{self.base_url}/api/settle", headers=headers) as response:
            return await response.json()

    def stop(self):
        self.running = False
        logger.info("Stopping load test...")


class MetricsReporter:
    """Console and CSV reporting"""

    @staticmethod
    def print_summary(metrics: MetricsCollector, state: Dict[str, Any] = None):
        summary = metrics.get_summary()

        print("\n" + "=" * 80)
        print("ORDER BOOK GAME LOAD TEST")
        print("=" * 80)
        print(f"Test Duration: {summary['test_duration_seconds']}s")
        print(f"Total Requests: {summary['total_requests']:,}")
        print(f"Accepted: {summary['accepted']:,}")
        print(f"Rejected by game: {summary['rejected_by_game']:,}")
        print(f"Failed: {summary['failed']:,}")
        print(f"Requests/Second: {summary['requests_per_second']:,.2f}")

        print(f"\nGAME:")
        print(f"Orders Accepted: {summary['orders_accepted']:,}")
        print(f"Cancels: {summary['cancels']:,}")
        print(f"Trades Executed: {summary['trades_executed']:,}")
        print(f"Contracts Traded: {summary['contracts_traded']:,}")
        for code, count in summary['rejection_codes'].items():
            print(f"  {code}: {count}")

        print(f"\nLATENCY (ms):")
        print(f"Average: {summary['average_latency_ms']}")
        print(f"Median: {summary['median_latency_ms']}")
        print(f"Max: {summary['max_latency_ms']}")
        for percentile, value in summary['percentiles'].items():
            print(f"  {percentile}: {value}")
        print(f"Peak concurrent requests: {summary['peak_concurrent_requests']}")

        if summary['error_types']:
            print(f"\nERRORS:")
            for error, count in summary['error_types'].items():
                print(f"  {error}: {count}")

        if state:
            bbo = state["state"]["bbo"]
            print(f"\nFINAL BOOK (version {state['version']}):")
            print(f"Best bid: {bbo.get('best_bid')}  Best ask: {bbo.get('best_ask')}")
            print(f"Resting orders: {len(state['state']['orders'])}")
            if state["state"]["settled_price"] is not None:
                print(f"Settled at: {state['state']['settled_price']}")

        print("=" * 80)

    @staticmethod
    def save_detailed_report(metrics: MetricsCollector, filename: str = None):
        if filename is None:
            filename = f"load_test_report_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"

        with open(filename, 'w', newline='') as csvfile:
            writer = csv.writer(csvfile)
            writer.writerow(["SUMMARY"])
            for key, value in metrics.get_summary().items():
                if isinstance(value, dict):
                    writer.writerow([key, ""])
                    for sub_key, sub_value in value.items():
                        writer.writerow([f"  {sub_key}", sub_value])
                else:
                    writer.writerow([key, value])

        logger.info(f"Detailed report saved to {filename}")


async def main():
    parser = argparse.ArgumentParser(description="Load test for the order book game server")
    parser.add_argument("--url", default="http://localhost:8080", help="Server base URL")
    parser.add_argument("--players", type=int, default=8, help="Number of bot players")
    parser.add_argument("--rate", type=int, default=50, help="Requests per second")
    parser.add_argument("--duration", type=int, default=30, help="Test duration in seconds")
    parser.add_argument("--connections", type=int, default=100, help="Max concurrent requests")
    parser.add_argument("--fair-value", type=float, default=20.0, help="Price the bots quote around")
    parser.add_argument("--tick", type=float, default=0.01, help="Server tick size")
    parser.add_argument("--test-type", choices=["constant", "spike"], default="constant")
    parser.add_argument("--spike-rate", type=int, default=200, help="Peak rate for spike test")
    parser.add_argument("--spike-duration", type=int, default=10, help="Spike duration in seconds")
    parser.add_argument("--baseline-rate", type=int, default=50, help="Baseline rate for spike test")
    parser.add_argument("--admin-token", help="Settle the game at the end with this token")
    parser.add_argument("--report", help="Save a CSV report to this file")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')

    async with LoadTester(args.url, players=args.players, max_connections=args.connections,
                          fair_value=args.fair_value, tick=args.tick) as tester:
        try:
            await tester.seat_players()
            if args.test_type == "constant":
                await tester.run_constant_rate_test(args.rate, args.duration)
            else:
                await tester.run_spike_test(args.spike_rate, args.spike_duration,
                                            args.baseline_rate, args.duration)
            if args.admin_token:
                settled = await tester.settle(args.admin_token)
                logger.info(f"Settlement: {settled}")

            MetricsReporter.print_summary(tester.metrics, await tester.fetch_state())
            if args.report:
                MetricsReporter.save_detailed_report(tester.metrics, args.report)
        except KeyboardInterrupt:
            logger.info("Test interrupted by user")
            tester.stop()


if __name__ == "__main__":
    asyncio.run(main())
