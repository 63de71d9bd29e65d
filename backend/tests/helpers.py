"""Shared test constants and helpers."""

from sqlalchemy import func, select

# ZIP 10001 centroid from the default directory
NYC = (40.7505, -73.9934)
MILES_PER_DEGREE_LAT = 69.09


def north_of(origin, miles):
    """Coordinates `miles` due north of origin."""
    return origin[0] + miles / MILES_PER_DEGREE_LAT, origin[1]


async def count_rows(session, model):
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()
