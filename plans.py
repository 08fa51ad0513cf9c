PLANS = {
    "kickstarter": {
        "name": "Kickstarter",
        "price": 0,
        "period": "month",
        "months": 1,
        "features": [
            "Risk management plan for 1 month",
            "Trading signals for 1 week",
            "Standard risk management calculator",
            "Phase tracking dashboard",
            "3 prop firm rule analyzer",
        ],
    },
    "starter": {
        "name": "Starter",
        "price": 99,
        "period": "month",
        "months": 1,
        "features": [
            "Risk management plan for 1 month",
            "Trading signals for 1 month",
            "Standard risk management calculator",
            "Phase tracking dashboard",
            "5 prop firm rule analyzer",
            "Email support",
            "Auto lot size calculator",
        ],
    },
    "pro": {
        "name": "Pro",
        "price": 199,
        "period": "month",
        "months": 1,
        "features": [
            "Risk management plan for 1 month",
            "Trading signals for 1 month",
            "Standard risk management calculator",
            "Phase tracking dashboard",
            "15 prop firm rule analyzer",
            "Priority chat and email support",
            "Auto lot size calculator",
            "Access to private community",
            "Multi account tracker",
            "Advanced trading journal",
            "Backtesting tools",
        ],
    },
    "enterprise": {
        "name": "Enterprise",
        "price": 499,
        "period": "3 months",
        "months": 3,
        "features": [
            "Risk management plan for 3 months",
            "Trading signals for 3 months",
            "Standard risk management calculator",
            "Phase tracking dashboard",
            "15 prop firm rule analyzer",
            "24/7 priority support",
            "Auto lot size calculator",
            "Access to private community",
            "Multi account tracker",
            "Advanced trading journal",
            "Professional backtesting suite",
            "Chart analysis tools",
        ],
    },
}

DEFAULT_PLAN = "starter"


def normalize_plan_type(plan_type: str | None):
    plan_type = (plan_type or "").strip().lower()
    return plan_type if plan_type in PLANS else DEFAULT_PLAN


def get_plan_details(plan_type: str | None):
    """Plan entry for ``plan_type``; unknown types fall back to Starter."""
    key = normalize_plan_type(plan_type)
    return {"plan_type": key, **PLANS[key]}
