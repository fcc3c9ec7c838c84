import tickr


def press(state, *keys):
    for key in keys:
        state.update(tickr.KeyPress(key))


def type_text(state, text):
    press(state, *list(text))


def tick(state, count=1):
    for _ in range(count):
        state.update(tickr.Tick())
