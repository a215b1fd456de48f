"""
Saga orchestration for multi-step checkout workflows.

Implements the Saga pattern with compensating actions. A balance checkout
runs as: debit the cart total -> persist its orders; if no order can be
persisted the debit is credited back.
"""
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from storefront.database.models import utcnow

logger = structlog.get_logger(__name__)

ForwardAction = Callable[[Dict[str, Any]], Awaitable[Any]]
CompensatingAction = Callable[[Dict[str, Any], Any], Awaitable[None]]


class SagaState(Enum):
    """Saga execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


class StepStatus(Enum):
    """Step execution status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


class SagaStep:
    """
    A single step in a saga.

    Each step has:
    - Forward action (the main operation)
    - Compensating action (undo operation), called with the forward result
    """

    def __init__(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
    ):
        self.name = name
        self.forward_action = forward_action
        self.compensating_action = compensating_action
        self.status = StepStatus.PENDING
        self.result: Optional[Any] = None
        self.error: Optional[str] = None

    async def execute(self, context: Dict[str, Any]) -> Any:
        """
        Execute the forward action.

        Raises:
            Exception: Whatever the forward action raises
        """
        logger.info("saga_step_executing", step=self.name)

        try:
            self.result = await self.forward_action(context)
        except Exception as e:
            self.status = StepStatus.FAILED
            self.error = str(e)
            logger.error("saga_step_failed", step=self.name, error=str(e))
            raise

        self.status = StepStatus.COMPLETED
        logger.info("saga_step_completed", step=self.name)
        return self.result

    async def compensate(self, context: Dict[str, Any]) -> None:
        """
        Execute the compensating action.

        A failed compensation is logged and marked on the step; it needs
        manual intervention and must not hide the original error.
        """
        if self.compensating_action is None:
            return

        if self.status != StepStatus.COMPLETED:
            logger.info("saga_step_skip_compensation", step=self.name, status=self.status.value)
            return

        logger.info("saga_step_compensating", step=self.name)

        try:
            await self.compensating_action(context, self.result)
        except Exception as e:
            self.status = StepStatus.COMPENSATION_FAILED
            self.error = str(e)
            logger.error("saga_step_compensation_failed", step=self.name, error=str(e))
            return

        self.status = StepStatus.COMPENSATED
        logger.info("saga_step_compensated", step=self.name)


class Saga:
    """
    Ordered steps with compensating actions.

    execute() runs the steps in order. If any step fails, completed steps are
    compensated in reverse order and the original exception is re-raised.
    """

    def __init__(self, name: str, saga_id: Optional[str] = None):
        self.saga_id = saga_id or str(uuid.uuid4())
        self.name = name
        self.steps: List[SagaStep] = []
        self.state = SagaState.PENDING
        self.context: Dict[str, Any] = {}
        self.created_at = utcnow()
        self.completed_at = None

    def add_step(
        self,
        name: str,
        forward_action: ForwardAction,
        compensating_action: Optional[CompensatingAction] = None,
    ) -> "Saga":
        """
        Add a step to the saga.

        Returns:
            Saga: Self for method chaining
        """
        self.steps.append(SagaStep(name, forward_action, compensating_action))
        return self

    async def execute(self) -> Dict[str, Any]:
        """
        Execute the saga.

        Returns:
            Dict[str, Any]: Saga context, with each step's result under
            "<step>_result"

        Raises:
            Exception: The failing step's exception, after compensation
        """
        logger.info("saga_execution_started", saga_id=self.saga_id, saga=self.name)

        self.state = SagaState.IN_PROGRESS
        completed_steps: List[SagaStep] = []

        try:
            for step in self.steps:
                result = await step.execute(self.context)
                completed_steps.append(step)
                self.context[f"{step.name}_result"] = result
        except Exception as e:
            logger.error("saga_execution_failed", saga_id=self.saga_id, saga=self.name, error=str(e))
            self.state = SagaState.COMPENSATING
            await self._compensate(completed_steps)
            self.state = SagaState.COMPENSATED
            self.completed_at = utcnow()
            raise

        self.state = SagaState.COMPLETED
        self.completed_at = utcnow()
        logger.info(
            "saga_completed_successfully",
            saga_id=self.saga_id,
            saga=self.name,
            steps_completed=len(completed_steps),
        )
        return self.context

    async def _compensate(self, completed_steps: List[SagaStep]) -> None:
        """Execute compensating actions for completed steps, newest first."""
        logger.info(
            "saga_compensation_started",
            saga_id=self.saga_id,
            steps_to_compensate=len(completed_steps),
        )

        for step in reversed(completed_steps):
            await step.compensate(self.context)

        logger.info("saga_compensation_completed", saga_id=self.saga_id)
