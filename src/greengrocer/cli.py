"""
Command-line interface for the GreenGrocer application.

The loop only reads input and prints results; every decision is made by
:class:`~greengrocer.app.GroceryApp`.  After login the menu switches to
the customer, carrier or owner view depending on the user's role.
"""

import logging
import sys
from datetime import date, datetime

from greengrocer import passwords, validation
from greengrocer.app import GroceryApp
from greengrocer.dao import close_request_connection, seed_default_data
from greengrocer.logging_config import configure_logging
from greengrocer.models import ROLE_CARRIER, ROLE_OWNER, LoyaltySettings


def _ask_int(prompt: str) -> int | None:
    value = validation.parse_int(input(prompt), None)
    if value is None:
        print("Please enter a whole number.")
    return value


def _ask_float(prompt: str) -> float | None:
    value = validation.parse_float(input(prompt).replace(",", "."), None)
    if value is None:
        print("Please enter a number.")
    return value


def _print_orders(orders) -> None:
    if not orders:
        print("No orders.")
        return
    for o in orders:
        carrier = f" carrier={o.carrier_name}" if o.carrier_name else ""
        print(f"#{o.id} [{o.status}] {o.order_time:%Y-%m-%d %H:%M} -> "
              f"{o.requested_delivery_time:%Y-%m-%d %H:%M}  {o.total_cost:.2f} TL{carrier}")


def _print_messages(messages) -> None:
    if not messages:
        print("No messages.")
        return
    for m in messages:
        flag = " " if m.is_read else "*"
        print(f"{flag} #{m.id} {m.sent_at:%Y-%m-%d %H:%M} {m.sender_name} -> {m.receiver_name}: "
              f"{m.subject} | {m.content_preview()}")


def _print_products(app: GroceryApp) -> None:
    products = app.list_products()
    if not products:
        print("No products available.")
        return
    for p in products:
        note = " (double price)" if p.is_price_doubled else ""
        print(f"{p.id}. {p.name} [{p.type}] {p.effective_price():.2f} TL/kg, stock {p.stock:.2f} kg{note}")


def _read_thread(app: GroceryApp) -> None:
    message_id = _ask_int("Message ID: ")
    if message_id is None:
        return
    for m in app.read_message(message_id):
        print(f"--- {m.sent_at:%Y-%m-%d %H:%M} {m.sender_name}: {m.subject}\n{m.content}")
    if input("Reply? (y/N): ").strip().lower() == "y":
        ok, msg = app.reply(message_id, input("Reply: "))
        print(msg)


def _choose_delivery_time(app: GroceryApp) -> datetime | None:
    slots = app.delivery_slots()
    if not slots:
        print("No delivery slots available.")
        return None
    for idx, slot in enumerate(slots, start=1):
        print(f"{idx}. {slot:%a %Y-%m-%d %H:%M}")
    choice = _ask_int("Delivery slot: ")
    if choice is None or not 1 <= choice <= len(slots):
        print("Invalid slot.")
        return None
    return slots[choice - 1]


def customer_menu(app: GroceryApp) -> bool:
    """One round of the customer menu; returns False after logout."""
    print(f"\n-- Customer: {app.current_user.username} ({app.loyalty_summary()['progress']}) --")
    print(f"   Unread messages: {app.unread_count()}")
    print("1. List products        2. Add to cart      3. View cart")
    print("4. Apply coupon         5. Checkout         6. My orders")
    print("7. Cancel order         8. Rate delivery    9. My coupons / points")
    print("10. Redeem points       11. Message owner   12. Message carrier")
    print("13. Inbox               14. Change password 0. Logout")
    choice = input("Select an option: ").strip()
    if choice == "1":
        _print_products(app)
    elif choice == "2":
        pid = _ask_int("Product ID: ")
        if pid is not None:
            print(app.add_to_cart(pid, input("Quantity (kg): "))[1])
    elif choice == "3":
        lines = app.view_cart()
        if not lines:
            print("Cart is empty.")
        else:
            for line in lines:
                print(f"{line.product_name}: {line.quantity:g} kg x {line.unit_price:.2f} = {line.line_total:.2f} TL")
            t = app.compute_cart_totals()
            print(f"Subtotal {t.subtotal:.2f}  Discount -{t.discount:.2f}  VAT {t.vat:.2f}  Total {t.total:.2f} TL")
    elif choice == "4":
        print(app.apply_coupon(input("Coupon code: "))[1])
    elif choice == "5":
        when = _choose_delivery_time(app)
        if when is not None:
            ok, msg = app.checkout(when)
            print(msg if ok else f"Checkout failed: {msg}")
    elif choice == "6":
        _print_orders(app.my_orders())
    elif choice == "7":
        oid = _ask_int("Order ID: ")
        if oid is not None:
            print(app.cancel_order(oid)[1])
    elif choice == "8":
        oid = _ask_int("Order ID: ")
        rating = _ask_int("Rating (1-5): ")
        if oid is not None and rating is not None:
            print(app.rate_carrier(oid, rating, input("Comment (optional): "))[1])
    elif choice == "9":
        summary = app.loyalty_summary()
        print(f"Tier {summary['tier']} ({summary['discount']:g}% off), {summary['points']} points")
        for c in app.my_coupons():
            print(f"{c.code}: {c.discount_description} - {c.status()} ({c.expiration_info()})")
    elif choice == "10":
        print(app.redeem_points()[1])
    elif choice == "11":
        print(app.send_to_owner(input("Subject: "), input("Message: "))[1])
    elif choice == "12":
        active = app.orders_with_carriers()
        if not active:
            print("None of your orders has a carrier yet.")
            return True
        for order in active:
            print(f"#{order.id} with {order.carrier_name} ({order.status})")
        oid = _ask_int("Order ID: ")
        if oid is not None:
            print(app.send_to_carrier(oid, input("Subject: "), input("Message: "))[1])
    elif choice == "13":
        _print_messages(app.inbox())
        _read_thread(app)
    elif choice == "14":
        current = input("Current password: ")
        new = input("New password: ")
        print(f"Strength: {passwords.password_strength(new)}")
        print(app.change_password(current, new)[1])
    elif choice == "0":
        app.logout()
        return False
    else:
        print("Invalid option. Please try again.")
    return True


def carrier_menu(app: GroceryApp) -> bool:
    print(f"\n-- Carrier: {app.current_user.username} --")
    print("1. Available orders  2. Take order  3. My current orders")
    print("4. Mark delivered    5. Completed   6. Inbox   0. Logout")
    choice = input("Select an option: ").strip()
    if choice == "1":
        _print_orders(app.orders.available_orders())
    elif choice == "2":
        oid = _ask_int("Order ID: ")
        if oid is not None:
            print(app.take_order(oid)[1])
    elif choice == "3":
        _print_orders(app.orders.current_orders())
    elif choice == "4":
        oid = _ask_int("Order ID: ")
        if oid is not None:
            print(app.deliver_order(oid)[1])
    elif choice == "5":
        _print_orders(app.orders.completed_orders())
    elif choice == "6":
        _print_messages(app.inbox())
        _read_thread(app)
    elif choice == "0":
        app.logout()
        return False
    else:
        print("Invalid option. Please try again.")
    return True


def _print_reports(app: GroceryApp) -> None:
    today = date.today()
    stats = app.dashboard()
    print(f"Today {stats['today_revenue']:.2f} TL, month {stats['month_revenue']:.2f} TL, "
          f"average order {stats['average_order_value']:.2f} TL")
    print("Orders by status: " + ", ".join(f"{k}={v}" for k, v in stats["order_counts"].items()))
    print("Top products:")
    for name, qty, revenue in app.reports.top_selling_products():
        print(f"  {name}: {qty:g} kg, {revenue:.2f} TL")
    print("Monthly revenue: " + ", ".join(f"{k}={v:.0f}" for k, v in app.reports.monthly_revenue(today).items()))
    print("Low stock: " + ", ".join(r["name"] for r in app.reports.inventory_report() if r["is_low_stock"]))
    for row in app.reports.carrier_performance():
        print(f"  {row['carrier_name']}: {row['average_rating']:.1f} ({row['total_ratings']} ratings)")


def owner_menu(app: GroceryApp) -> bool:
    print("\n-- Owner --")
    print("1. Products        2. Add product      3. Update product   4. Restock")
    print("5. Remove product  6. All orders       7. Carriers         8. Employ carrier")
    print("9. Fire carrier    10. Create coupon   11. Coupon stats    12. Loyalty settings")
    print("13. Reports        14. Inbox           15. Metrics         16. Reload images")
    print("0. Logout")
    choice = input("Select an option: ").strip()
    if choice == "1":
        _print_products(app)
    elif choice == "2":
        name = input("Name: ").strip()
        ptype = input("Type (vegetable/fruit): ").strip().lower()
        price = _ask_float("Price per kg: ")
        stock = _ask_float("Stock (kg): ")
        threshold = _ask_float("Threshold (kg): ")
        if None not in (price, stock, threshold):
            print(app.add_product(name, ptype, price, stock, threshold)[1])
    elif choice == "3":
        pid = _ask_int("Product ID: ")
        name = input("Name: ")
        price = _ask_float("Price per kg: ")
        threshold = _ask_float("Threshold (kg): ")
        if None not in (pid, price, threshold):
            print(app.update_product(pid, name, price, threshold)[1])
    elif choice == "4":
        pid = _ask_int("Product ID: ")
        stock = _ask_float("New stock (kg): ")
        if pid is not None and stock is not None:
            print(app.restock(pid, stock)[1])
    elif choice == "5":
        pid = _ask_int("Product ID: ")
        if pid is not None:
            print(app.remove_product(pid)[1])
    elif choice == "6":
        _print_orders(app.orders.all_orders(input("Status (blank for all): ").strip() or None))
    elif choice == "7":
        for c in app.carriers.all_carriers():
            print(f"{c.id}. {c.username} avg rating {app.carriers.average_rating(c.id):.1f}")
    elif choice == "8":
        print(app.employ_carrier(input("Username: "), input("E-mail: ").strip() or None, input("Password: "))[1])
    elif choice == "9":
        cid = _ask_int("Carrier ID: ")
        if cid is not None:
            print(app.fire_carrier(cid)[1])
    elif choice == "10":
        code = input("Code: ")
        pct = _ask_float("Discount %: ")
        try:
            expires = date.fromisoformat(input("Expires (YYYY-MM-DD): ").strip())
        except ValueError:
            print("Invalid date.")
            return True
        minimum = _ask_float("Minimum order (0 for none): ")
        maximum = _ask_float("Maximum discount (0 for uncapped): ")
        if None not in (pct, minimum, maximum):
            print(app.create_coupon(code, pct, expires, minimum, maximum)[1])
    elif choice == "11":
        print(app.coupons.statistics())
        for c in app.coupons.expiring_soon():
            print(f"  {c.code} {c.expiration_info()}")
    elif choice == "12":
        current = app.loyalty.get_settings()
        print(f"Tiers: {current.tier1_threshold}/{current.tier1_discount:g}%, "
              f"{current.tier2_threshold}/{current.tier2_discount:g}%, "
              f"{current.tier3_threshold}/{current.tier3_discount:g}%")
        values = [_ask_int("Tier 1 orders: "), _ask_float("Tier 1 %: "),
                  _ask_int("Tier 2 orders: "), _ask_float("Tier 2 %: "),
                  _ask_int("Tier 3 orders: "), _ask_float("Tier 3 %: ")]
        if None not in values:
            updated = LoyaltySettings(
                id=current.id,
                tier1_threshold=values[0], tier1_discount=values[1],
                tier2_threshold=values[2], tier2_discount=values[3],
                tier3_threshold=values[4], tier3_discount=values[5],
                points_per_currency=current.points_per_currency,
                points_for_coupon=current.points_for_coupon,
                coupon_value=current.coupon_value,
            )
            print(app.update_loyalty_settings(updated)[1])
    elif choice == "13":
        _print_reports(app)
    elif choice == "14":
        _print_messages(app.inbox())
        _read_thread(app)
    elif choice == "15":
        print(app.metrics_text())
    elif choice == "16":
        print(f"{app.images.force_reload_all_images()} images reloaded.")
    elif choice == "0":
        app.logout()
        return False
    else:
        print("Invalid option. Please try again.")
    return True


def interactive_cli() -> None:
    """Login/registration loop that hands over to the role's menu."""
    if seed_default_data():
        print("New store created with accounts own/own, carr/carr and cust/cust.")
    app = GroceryApp()
    loaded, _ = app.load_default_images()
    if loaded:
        print(f"Loaded {loaded} product images.")

    while True:
        print("\n-- GreenGrocer --")
        print("1. Login")
        print("2. Register")
        print("3. Browse products")
        print("0. Exit")
        choice = input("Select an option: ").strip()
        if choice == "1":
            username = input("Username: ").strip()
            password = input("Password: ").strip()
            if not app.login(username, password):
                print("Invalid username or password.")
                continue
            print(f"Welcome, {username}!")
            role = app.current_user.role
            menu = owner_menu if role == ROLE_OWNER else carrier_menu if role == ROLE_CARRIER else customer_menu
            while menu(app):
                pass
        elif choice == "2":
            print(app.auth.password_requirements())
            username = input("Username: ").strip()
            password = input("Password: ").strip()
            print(f"Strength: {passwords.password_strength(password)}")
            ok, msg = app.register(
                username,
                password,
                input("Delivery address: ").strip(),
                email=input("E-mail (optional): ").strip() or None,
                phone=input("Phone (optional): ").strip() or None,
            )
            print(msg)
        elif choice == "3":
            _print_products(app)
        elif choice == "0":
            print("Goodbye.")
            break
        else:
            print("Invalid option. Please try again.")


def main() -> None:
    configure_logging(console_level=logging.WARNING)
    try:
        interactive_cli()
    except KeyboardInterrupt:
        print("\nInterrupted by user. Exiting.")
        sys.exit(0)
    finally:
        close_request_connection()


if __name__ == "__main__":
    main()
