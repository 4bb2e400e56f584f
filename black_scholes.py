import math

# ==============================================================================
# CONSTANTS
# ==============================================================================

RISK_FREE_RATE = 0.05
DAYS_PER_YEAR = 365

INITIAL_VOLATILITY = 0.3
MAX_ITERATIONS = 100
TOLERANCE = 1e-8
MIN_VEGA = 1e-12
MIN_VOLATILITY = 0.001
MAX_VOLATILITY = 5.0

# Abramowitz & Stegun 7.1.26 coefficients
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911

# ==============================================================================
# END CONSTANTS
# ==============================================================================


def normal_cdf(x):
    """
    Standard normal cumulative distribution function.

    Uses the Abramowitz & Stegun erf approximation (max error ~1.5e-7).

    Example:
        >>> round(normal_cdf(0), 6)
        0.5
    """
    sign = -1 if x < 0 else 1
    z = abs(x) / math.sqrt(2)
    t = 1.0 / (1.0 + _P * z)
    y = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-z * z)
    return 0.5 * (1.0 + sign * y)


def normal_pdf(x):
    return math.exp(-0.5 * x * x) / math.sqrt(2 * math.pi)


def _d1_d2(spot, strike, years, rate, volatility):
    sqrt_t = math.sqrt(years)
    d1 = (math.log(spot / strike) + (rate + 0.5 * volatility ** 2) * years) / (volatility * sqrt_t)
    return d1, d1 - volatility * sqrt_t


def bs_put_price(spot, strike, years, rate, volatility):
    """
    Black-Scholes price of a European put.

    P = K * e^(-rT) * N(-d2) - S * N(-d1)

    Args:
        spot: Underlying price
        strike: Strike price
        years: Time to expiration in years
        rate: Risk-free rate as decimal
        volatility: Annualized volatility as decimal

    Returns:
        Put price; intrinsic value when years or volatility is not positive
    """
    if years <= 0 or volatility <= 0:
        return max(strike - spot, 0)
    d1, d2 = _d1_d2(spot, strike, years, rate, volatility)
    return strike * math.exp(-rate * years) * normal_cdf(-d2) - spot * normal_cdf(-d1)


def bs_vega(spot, strike, years, rate, volatility):
    """Sensitivity of the option price to a 1.0 change in volatility."""
    if years <= 0 or volatility <= 0:
        return 0
    d1, _ = _d1_d2(spot, strike, years, rate, volatility)
    return spot * normal_pdf(d1) * math.sqrt(years)


def compute_iv(market_price, spot, strike, years, rate=RISK_FREE_RATE):
    """
    Implied volatility of a put via Newton-Raphson.

    Starts at 30% and iterates sigma -= (model - market) / vega, clamping
    sigma to [0.1%, 500%] after every step.

    Args:
        market_price: Observed put price
        spot: Underlying price
        strike: Strike price
        years: Time to expiration in years
        rate: Risk-free rate as decimal

    Returns:
        Implied volatility as decimal, or None if inputs are invalid, vega
        collapses, or the solver does not converge within MAX_ITERATIONS

    Example:
        >>> price = bs_put_price(100, 95, 0.25, 0.05, 0.4)
        >>> round(compute_iv(price, 100, 95, 0.25), 4)
        0.4
    """
    if market_price is None or market_price <= 0 or spot <= 0 or strike <= 0 or years <= 0:
        return None

    sigma = INITIAL_VOLATILITY
    for _ in range(MAX_ITERATIONS):
        diff = bs_put_price(spot, strike, years, rate, sigma) - market_price
        if abs(diff) < TOLERANCE:
            return sigma
        vega = bs_vega(spot, strike, years, rate, sigma)
        if vega < MIN_VEGA:
            return None
        sigma = min(max(sigma - diff / vega, MIN_VOLATILITY), MAX_VOLATILITY)

    return None


def dte_to_years(dte):
    return dte / DAYS_PER_YEAR
