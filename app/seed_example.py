from decimal import Decimal

from sqlalchemy import select

from app.db import SessionLocal, engine
from app.models import Base, Branch, DiningTable, MenuItem, ModifierOption, Restaurant

DEMO_MENU = [
    ('Mansaf', Decimal('7.500'), [('Size', 'Large', Decimal('2.000')), ('Extras', 'Extra jameed', Decimal('0.500'))]),
    ('Falafel Sandwich', Decimal('0.750'), [('Extras', 'Add fries', Decimal('0.250'))]),
    ('Hummus', Decimal('1.500'), []),
    ('Mint Lemonade', Decimal('1.250'), [('Size', 'Large', Decimal('0.500'))]),
    ('Turkish Coffee', Decimal('1.000'), [('Sugar', 'Medium', Decimal('0')), ('Sugar', 'Sweet', Decimal('0'))]),
]


def seed() -> dict:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        restaurant = db.execute(select(Restaurant).where(Restaurant.name == 'Demo Restaurant')).scalar_one_or_none()
        if not restaurant:
            restaurant = Restaurant(
                name='Demo Restaurant',
                currency_code='JOD',
                tax_rate=Decimal('0.16'),
                service_charge_rate=Decimal('0.10'),
                active=True,
            )
            db.add(restaurant)
            db.flush()

        branch = db.execute(
            select(Branch).where(Branch.restaurant_id == restaurant.id, Branch.name == 'Downtown')
        ).scalar_one_or_none()
        if not branch:
            branch = Branch(restaurant_id=restaurant.id, name='Downtown', active=True)
            db.add(branch)
            db.flush()

        existing_tables = db.execute(select(DiningTable.name).where(DiningTable.branch_id == branch.id)).scalars().all()
        for position in range(1, 9):
            name = f'T{position}'
            if name not in existing_tables:
                db.add(DiningTable(branch_id=branch.id, name=name, capacity=4, position=position, active=True))

        existing_items = db.execute(select(MenuItem.name).where(MenuItem.restaurant_id == restaurant.id)).scalars().all()
        for name, price, modifiers in DEMO_MENU:
            if name in existing_items:
                continue
            item = MenuItem(restaurant_id=restaurant.id, name=name, base_price=price, active=True)
            db.add(item)
            db.flush()
            for group_name, option_name, adjustment in modifiers:
                db.add(
                    ModifierOption(
                        menu_item_id=item.id,
                        group_name=group_name,
                        name=option_name,
                        price_adjustment=adjustment,
                        active=True,
                    )
                )

        db.commit()
        return {'restaurant_id': restaurant.id, 'branch_id': branch.id}


if __name__ == '__main__':
    ids = seed()
    print('Seed data inserted/verified.')
    print('Send these headers from the cashier terminal:')
    print(f"  X-Restaurant-Id: {ids['restaurant_id']}")
    print(f"  X-Branch-Id: {ids['branch_id']}")
    print('  X-Cashier-Id: 1')
