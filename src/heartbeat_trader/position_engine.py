"""Leveraged position lifecycle: open, price refresh, close, stop changes.

Every mutation is computed on a copy of the position and handed to
PositionRepository.apply together with its history entries, so a failed
validation or a concurrent change leaves the stored position untouched.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from heartbeat_trader import risk_math
from heartbeat_trader.errors import NotFoundError, ValidationError
from heartbeat_trader.models.position import (
    CloseResult,
    HistoryAction,
    Position,
    PositionHistoryEntry,
    PositionSide,
    PositionStatus,
    RefreshResult,
)

if TYPE_CHECKING:
    from heartbeat_trader.db.repository import InstrumentRepository, PositionRepository
    from heartbeat_trader.models.trader import Trader

logger = structlog.get_logger()

# Relative tolerance under which a requested close quantity counts as the full remainder
QUANTITY_TOLERANCE = 1e-9

UNSET = object()

# Scale of the positions.leverage column; derived fields are computed from the stored value
LEVERAGE_DECIMALS = 2


def _now() -> datetime:
    return datetime.now(timezone.utc)


def round_leverage(leverage: float | None) -> float | None:
    return round(leverage, LEVERAGE_DECIMALS) if leverage is not None else None


def stop_ordering_errors(
    side: PositionSide,
    entry: float,
    stop_loss: float | None,
    take_profit: float | None,
) -> list[str]:
    """Long: stop_loss < entry < take_profit. Short: take_profit < entry < stop_loss."""
    errors: list[str] = []
    if stop_loss is not None:
        if stop_loss <= 0:
            errors.append(f"stop_loss must be > 0, got {stop_loss}")
        elif side == PositionSide.LONG and stop_loss >= entry:
            errors.append(f"LONG stop_loss ({stop_loss}) must be below entry ({entry})")
        elif side == PositionSide.SHORT and stop_loss <= entry:
            errors.append(f"SHORT stop_loss ({stop_loss}) must be above entry ({entry})")
    if take_profit is not None:
        if take_profit <= 0:
            errors.append(f"take_profit must be > 0, got {take_profit}")
        elif side == PositionSide.LONG and take_profit <= entry:
            errors.append(f"LONG take_profit ({take_profit}) must be above entry ({entry})")
        elif side == PositionSide.SHORT and take_profit >= entry:
            errors.append(f"SHORT take_profit ({take_profit}) must be below entry ({entry})")
    return errors


class PositionEngine:
    def __init__(
        self,
        position_repo: PositionRepository,
        instrument_repo: InstrumentRepository,
        fee_rate: float = risk_math.DEFAULT_FEE_RATE,
        maintenance_margin_ratio: float = risk_math.DEFAULT_MAINTENANCE_MARGIN_RATIO,
        near_liquidation_pct: float = 10.0,
    ) -> None:
        self.position_repo = position_repo
        self.instrument_repo = instrument_repo
        self.fee_rate = fee_rate
        self.maintenance_margin_ratio = maintenance_margin_ratio
        self.near_liquidation_pct = near_liquidation_pct

    # --- Open ---

    async def open(
        self,
        trader: Trader,
        instrument: str,
        side: PositionSide | str,
        leverage: float,
        position_size: float,
        entry_price: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> Position:
        side = PositionSide(side)
        leverage = round_leverage(leverage)
        errors: list[str] = []
        self._validate_leverage(trader, leverage, errors)
        self._validate_size(trader, position_size, errors)
        self._validate_side(trader, side, errors)
        if entry_price is None or entry_price <= 0:
            errors.append(f"entry_price must be > 0, got {entry_price}")
        else:
            errors.extend(stop_ordering_errors(side, entry_price, stop_loss, take_profit))
        if errors:
            logger.warning(
                "position_open_rejected",
                trader_id=trader.id,
                instrument=instrument,
                errors=errors,
            )
            raise ValidationError("; ".join(errors))

        if not await self.instrument_repo.exists(instrument):
            raise NotFoundError(f"Unknown instrument: {instrument}")

        quantity = risk_math.quantity(position_size, entry_price)
        margin = risk_math.margin(position_size, leverage)
        open_fee = risk_math.fee(position_size, self.fee_rate)
        liq_price = risk_math.liquidation_price(
            side, entry_price, leverage, self.maintenance_margin_ratio
        )
        now = _now()
        position = Position(
            trader_id=trader.id,
            instrument=instrument,
            side=side,
            entry_price=entry_price,
            current_price=entry_price,
            leverage=leverage,
            quantity=quantity,
            position_size=position_size,
            margin=margin,
            open_fee=open_fee,
            stop_loss=stop_loss,
            take_profit=take_profit,
            liquidation_price=liq_price,
            opened_at=now,
            updated_at=now,
        )
        history = [
            PositionHistoryEntry(
                action=HistoryAction.OPEN,
                price=entry_price,
                quantity=quantity,
                details={
                    "leverage": leverage,
                    "margin": margin,
                    "open_fee": open_fee,
                    "liquidation_price": liq_price,
                    "stop_loss": stop_loss,
                    "take_profit": take_profit,
                },
                created_at=now,
            )
        ]
        created = await self.position_repo.create(position, history)
        logger.info(
            "position_opened",
            position_id=created.id,
            trader_id=trader.id,
            instrument=instrument,
            side=side.value,
            leverage=leverage,
            size=position_size,
            liquidation_price=round(liq_price, 8),
        )
        return created

    # --- Price refresh ---

    async def refresh_price(self, position: Position, current_price: float) -> RefreshResult:
        """Mark to market, then check liquidation, stop-loss, take-profit in that order.

        The first condition that fires closes (or liquidates) the position and
        the remaining checks are skipped.
        """
        self._require_open(position)
        unrealized = risk_math.pnl(position.side, position.entry_price, current_price, position.quantity)
        now = _now()
        marked = position.model_copy(
            update={"current_price": current_price, "unrealized_pnl": unrealized, "updated_at": now}
        )
        history = [
            PositionHistoryEntry(
                action=HistoryAction.PRICE_UPDATE,
                price=current_price,
                quantity=position.quantity,
                pnl=unrealized,
                details={
                    "roe": risk_math.roe(unrealized, position.margin),
                    "pnl_percent": risk_math.pnl_percent(
                        position.side, position.entry_price, current_price
                    ),
                },
                created_at=now,
            )
        ]

        trigger: HistoryAction | None = None
        if self.evaluate_liquidation(marked):
            trigger = HistoryAction.LIQUIDATE
            updated, entry = self._liquidated(marked, current_price, now)
        elif self.evaluate_stop_loss(marked):
            trigger = HistoryAction.STOP_LOSS_TRIGGERED
            updated, entry, _ = self._closed(marked, None, current_price, trigger, now)
        elif self.evaluate_take_profit(marked):
            trigger = HistoryAction.TAKE_PROFIT_TRIGGERED
            updated, entry, _ = self._closed(marked, None, current_price, trigger, now)
        else:
            updated, entry = marked, None
            distance = risk_math.liquidation_distance_pct(
                position.side, current_price, position.liquidation_price
            )
            if distance < self.near_liquidation_pct:
                logger.warning(
                    "near_liquidation",
                    position_id=position.id,
                    distance_pct=round(distance, 2),
                    risk_level=risk_math.liquidation_risk_level(
                        position.side, current_price, position.liquidation_price
                    ),
                )
        if entry is not None:
            history.append(entry)

        saved = await self.position_repo.apply(updated, history)
        if trigger is not None:
            logger.info(
                "position_auto_closed",
                position_id=position.id,
                trigger=trigger.value,
                price=current_price,
                realized_pnl=round(saved.realized_pnl, 8),
            )
        return RefreshResult(position=saved, trigger=trigger)

    # --- Close ---

    async def close(
        self,
        position: Position,
        quantity: float | None = None,
        close_price: float | None = None,
    ) -> CloseResult:
        """Close all of the position, or ``quantity`` of it, at ``close_price``.

        Without ``close_price`` the last marked price is used.
        """
        self._require_open(position)
        price = close_price if close_price is not None else position.current_price
        now = _now()
        updated, entry, result = self._closed(position, quantity, price, None, now)
        saved = await self.position_repo.apply(updated, [entry])
        logger.info(
            "position_closed" if result.fully_closed else "position_partially_closed",
            position_id=position.id,
            quantity=result.closed_quantity,
            price=price,
            realized_pnl=round(result.realized_pnl, 8),
            close_fee=round(result.close_fee, 8),
        )
        return result.model_copy(update={"position": saved})

    # --- Stops ---

    async def modify_stops(
        self,
        position: Position,
        stop_loss: float | None | object = UNSET,
        take_profit: float | None | object = UNSET,
    ) -> Position:
        """Change stop-loss and/or take-profit. Omitted values keep their current setting.

        Passing None explicitly removes that stop.
        """
        self._require_open(position)
        new_sl = position.stop_loss if stop_loss is UNSET else stop_loss
        new_tp = position.take_profit if take_profit is UNSET else take_profit
        if stop_loss is UNSET and take_profit is UNSET:
            raise ValidationError("modify_stops needs a stop_loss or take_profit value")

        errors = stop_ordering_errors(position.side, position.entry_price, new_sl, new_tp)
        if errors:
            logger.warning("modify_stops_rejected", position_id=position.id, errors=errors)
            raise ValidationError("; ".join(errors))

        now = _now()
        updated = position.model_copy(
            update={"stop_loss": new_sl, "take_profit": new_tp, "updated_at": now}
        )
        entry = PositionHistoryEntry(
            action=HistoryAction.MODIFY_SL_TP,
            price=position.current_price,
            details={
                "old_stop_loss": position.stop_loss,
                "new_stop_loss": new_sl,
                "old_take_profit": position.take_profit,
                "new_take_profit": new_tp,
            },
            created_at=now,
        )
        saved = await self.position_repo.apply(updated, [entry])
        logger.info(
            "position_stops_modified",
            position_id=position.id,
            stop_loss=new_sl,
            take_profit=new_tp,
        )
        return saved

    # --- Predicates ---

    def evaluate_liquidation(self, position: Position) -> bool:
        return risk_math.should_liquidate(
            position.side, position.current_price, position.liquidation_price
        )

    def evaluate_stop_loss(self, position: Position) -> bool:
        if position.stop_loss is None:
            return False
        return risk_math.is_stop_loss_triggered(
            position.side, position.current_price, position.stop_loss
        )

    def evaluate_take_profit(self, position: Position) -> bool:
        if position.take_profit is None:
            return False
        return risk_math.is_take_profit_triggered(
            position.side, position.current_price, position.take_profit
        )

    # --- State transitions (pure) ---

    def _closed(
        self,
        position: Position,
        quantity: float | None,
        price: float,
        trigger: HistoryAction | None,
        now: datetime,
    ) -> tuple[Position, PositionHistoryEntry, CloseResult]:
        remaining = position.quantity
        if quantity is not None:
            if quantity <= 0:
                raise ValidationError(f"close quantity must be > 0, got {quantity}")
            if quantity > remaining and not math.isclose(
                quantity, remaining, rel_tol=QUANTITY_TOLERANCE
            ):
                raise ValidationError(
                    f"close quantity {quantity} exceeds remaining quantity {remaining}"
                )
        full = quantity is None or math.isclose(quantity, remaining, rel_tol=QUANTITY_TOLERANCE)
        closed_qty = remaining if full else quantity

        gross = risk_math.pnl(position.side, position.entry_price, price, closed_qty)
        closed_size = position.position_size if full else closed_qty * position.entry_price
        close_fee = risk_math.fee(closed_size, self.fee_rate)
        realized_total = position.realized_pnl + gross
        close_fee_total = position.close_fee + close_fee

        if full:
            updated = position.model_copy(
                update={
                    "status": PositionStatus.CLOSED,
                    "current_price": price,
                    "close_fee": close_fee_total,
                    "realized_pnl": realized_total,
                    "unrealized_pnl": 0.0,
                    "closed_at": now,
                    "updated_at": now,
                }
            )
        else:
            left_qty = remaining - closed_qty
            left_size = left_qty * position.entry_price
            updated = position.model_copy(
                update={
                    "current_price": price,
                    "quantity": left_qty,
                    "position_size": left_size,
                    "margin": left_size / position.leverage,
                    "close_fee": close_fee_total,
                    "realized_pnl": realized_total,
                    "unrealized_pnl": risk_math.pnl(
                        position.side, position.entry_price, price, left_qty
                    ),
                    "updated_at": now,
                }
            )

        action = trigger or (HistoryAction.CLOSE if full else HistoryAction.PARTIAL_CLOSE)
        entry = PositionHistoryEntry(
            action=action,
            price=price,
            quantity=closed_qty,
            pnl=gross,
            details={
                "close_fee": close_fee,
                "remaining_quantity": 0.0 if full else updated.quantity,
                "realized_pnl_total": realized_total,
            },
            created_at=now,
        )
        result = CloseResult(
            position=updated,
            close_price=price,
            closed_quantity=closed_qty,
            close_fee=close_fee,
            realized_pnl=gross,
            net_pnl=risk_math.net_pnl(realized_total, position.open_fee, close_fee_total),
            fully_closed=full,
        )
        return updated, entry, result

    def _liquidated(
        self, position: Position, price: float, now: datetime
    ) -> tuple[Position, PositionHistoryEntry]:
        """Liquidation forfeits the remaining margin; no close fee is charged."""
        mark_pnl = risk_math.pnl(position.side, position.entry_price, price, position.quantity)
        updated = position.model_copy(
            update={
                "status": PositionStatus.LIQUIDATED,
                "current_price": price,
                "realized_pnl": position.realized_pnl - position.margin,
                "unrealized_pnl": 0.0,
                "closed_at": now,
                "updated_at": now,
            }
        )
        entry = PositionHistoryEntry(
            action=HistoryAction.LIQUIDATE,
            price=price,
            quantity=position.quantity,
            pnl=-position.margin,
            details={
                "liquidation_price": position.liquidation_price,
                "mark_pnl": mark_pnl,
            },
            created_at=now,
        )
        return updated, entry

    # --- Validation ---

    @staticmethod
    def _require_open(position: Position) -> None:
        if position.status != PositionStatus.OPEN:
            raise ValidationError(
                f"Position {position.id} is {position.status.value}, not open"
            )

    @staticmethod
    def _validate_leverage(trader: Trader, leverage: float, errors: list[str]) -> None:
        if leverage is None or not trader.min_leverage <= leverage <= trader.max_leverage:
            errors.append(
                f"leverage {leverage} outside trader bounds "
                f"[{trader.min_leverage}, {trader.max_leverage}]"
            )

    @staticmethod
    def _validate_size(trader: Trader, position_size: float, errors: list[str]) -> None:
        if position_size is None or position_size <= 0:
            errors.append(f"position_size must be > 0, got {position_size}")
        elif position_size > trader.max_position_size:
            errors.append(
                f"position_size {position_size} exceeds max_position_size {trader.max_position_size}"
            )

    @staticmethod
    def _validate_side(trader: Trader, side: PositionSide, errors: list[str]) -> None:
        if side == PositionSide.SHORT and not trader.allow_short:
            errors.append("trader does not allow short positions")
