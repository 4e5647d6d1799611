"""
Credits Router - Credit balance, cost and spending API

Endpoints for the worksheet generator and the transactions page:
- balance (lazily creates the account with the welcome bonus)
- cost preview for a worksheet
- spend (debits before generation starts)
- ledger history with keyset pagination
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from app.deps import get_current_user, get_user_id
from app.models.credits import (
    CreditBalanceResponse,
    CreditCostResponse,
    CreditHistoryResponse,
    SpendRequest,
    SpendResponse,
    TransactionType,
)
from app.services.cost_calculator import get_worksheet_credit_cost
from app.services.credit_service import (
    MAX_HISTORY_LIMIT,
    get_credit_service,
    parse_history_cursor,
)
from app.services.plans import get_plan_credits
from app.utils.errors import (
    InsufficientCredits,
    handle_exception,
    raise_validation_error,
    to_http_exception,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_credit_balance(current_user: dict = Depends(get_current_user)):
    """
    Get the current credit balance.

    First call for a user creates their account with 5 welcome credits.
    """
    user_id = get_user_id(current_user)
    try:
        account = await get_credit_service().get_or_create_account(user_id)

        return CreditBalanceResponse(
            credits=account.credits,
            plan=account.plan,
            plan_credits=get_plan_credits(account.plan.value),
            plan_started_at=account.plan_started_at,
            has_subscription=bool(account.polar_subscription_id),
        )

    except HTTPException:
        raise
    except Exception as e:
        raise handle_exception(e, "get_credit_balance", user_id=user_id)


@router.get("/cost", response_model=CreditCostResponse)
async def get_credit_cost(
    subject: str = "",
    topic: str = "",
    question_count: int = Query(10, ge=1, le=100),
):
    """Credits a worksheet with these parameters will cost."""
    return CreditCostResponse(
        cost=get_worksheet_credit_cost(subject, topic, question_count),
        subject=subject,
        topic=topic,
        question_count=question_count,
    )


@router.post("/spend", response_model=SpendResponse)
async def spend_credits(
    request: SpendRequest,
    current_user: dict = Depends(get_current_user)
):
    """
    Debit the worksheet cost before generation starts.

    Returns 402 with the shortfall when the balance does not cover it.
    """
    user_id = get_user_id(current_user)
    cost = get_worksheet_credit_cost(request.subject, request.topic, request.question_count)
    description = request.description or (
        f"Worksheet: {request.topic or request.subject or 'General'} ({request.question_count} questions)"
    )

    try:
        entry = await get_credit_service().spend_credits(
            user_id,
            cost,
            description,
            metadata={
                "subject": request.subject,
                "topic": request.topic,
                "question_count": request.question_count,
            },
        )

        return SpendResponse(
            success=True,
            cost=cost,
            balance=entry.balance_after if entry.balance_after is not None else 0,
            transaction_id=entry.id,
        )

    except HTTPException:
        raise
    except InsufficientCredits as e:
        raise to_http_exception(e)
    except Exception as e:
        raise handle_exception(e, "spend_credits", user_id=user_id)


@router.get("/history", response_model=CreditHistoryResponse)
async def get_credit_history(
    limit: int = Query(MAX_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
    cursor: Optional[str] = None,
    type: Optional[TransactionType] = None,
    current_user: dict = Depends(get_current_user)
):
    """
    Get credit transaction history, newest first.

    Pass the returned `next_cursor` as `cursor` to fetch the next page.
    """
    user_id = get_user_id(current_user)
    if cursor:
        try:
            parse_history_cursor(cursor)
        except ValueError:
            raise_validation_error("Invalid cursor", field="cursor")

    try:
        page = await get_credit_service().get_transactions(
            user_id,
            limit=limit,
            cursor=cursor,
            transaction_type=type.value if type else None,
        )
        return CreditHistoryResponse(**page)

    except HTTPException:
        raise
    except Exception as e:
        raise handle_exception(e, "get_credit_history", user_id=user_id)
