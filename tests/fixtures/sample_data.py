CELL_BIOLOGY_TEXT = (
    'Cellular respiration is the set of metabolic reactions that convert chemical energy from nutrients into '
    'adenosine triphosphate. It begins with glycolysis in the cytoplasm, where one glucose molecule is split '
    'into two molecules of pyruvate with a small net gain of ATP and NADH. In the presence of oxygen, pyruvate '
    'enters the mitochondria and is converted into acetyl coenzyme A, which feeds the citric acid cycle. The '
    'cycle releases carbon dioxide and loads electron carriers with high energy electrons. Those carriers then '
    'donate electrons to the electron transport chain on the inner mitochondrial membrane. As electrons move '
    'along the chain, protons are pumped across the membrane, building a gradient that drives ATP synthase. '
    'Oxygen acts as the final electron acceptor and combines with protons to form water. Without oxygen, cells '
    'fall back to fermentation, which regenerates NAD+ but yields far less energy per glucose molecule. '
    'Muscle cells produce lactate during intense exercise, while yeast produce ethanol and carbon dioxide. '
    'The overall efficiency of aerobic respiration is close to forty percent, with the rest of the energy '
    'released as heat that helps warm-blooded animals keep a stable body temperature.'
)

HISTORY_TEXT = (
    'The printing press with movable type spread across Europe in the second half of the fifteenth century. '
    'Printers in Mainz, Venice and Paris produced books faster and more cheaply than scribes ever could. '
) * 6
