from .plan import ExecutionPlan, PlanStep, plan

__all__ = ["ExecutionPlan", "PlanStep", "plan"]
