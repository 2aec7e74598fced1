from aiogram.fsm.state import State, StatesGroup


class DriverState(StatesGroup):
    viewing_order = State()  # Открыт экран заказа; order_id хранится в данных FSM
