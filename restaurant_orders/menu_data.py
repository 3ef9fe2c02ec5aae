from decimal import Decimal

DEFAULT_MENU_ITEMS = [
    {"name": "Latte", "price": Decimal("25000"), "category": "Coffee", "preparation_time": 5},
    {"name": "Americano", "price": Decimal("20000"), "category": "Coffee", "preparation_time": 4},
    {"name": "Cappuccino", "price": Decimal("27000"), "category": "Coffee", "preparation_time": 5},
    {"name": "Iced Tea", "price": Decimal("12000"), "category": "Drinks", "preparation_time": 2},
    {"name": "Croissant", "price": Decimal("15000"), "category": "Pastry", "preparation_time": 3},
    {"name": "Nasi Goreng", "price": Decimal("35000"), "category": "Main", "preparation_time": 15},
    {"name": "Mie Goreng", "price": Decimal("32000"), "category": "Main", "preparation_time": 12},
]
